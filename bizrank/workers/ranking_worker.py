from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from bizrank.config import settings
from bizrank.database import close_mongo_connection, connect_to_mongo, ensure_indexes, get_database
from bizrank.pipeline.clock import utc_now
from bizrank.services.ranking_service import RankingService, job_lease_cutoff

LOGGER = logging.getLogger("ranking_worker")


def _job_event(stage: str, message: str, data: dict[str, Any] | None, now: datetime) -> dict[str, Any]:
    return {"stage": stage, "message": message, "data": data or {}, "created_at": now}


class RankingWorker:
    _JOBS_COLLECTION = "ranking_jobs"

    def __init__(self, database: AsyncIOMotorDatabase | None = None, service: RankingService | None = None) -> None:
        self._database = database
        self._service = service or RankingService(database)
        self._poll_seconds = max(1, int(settings.worker_poll_seconds))
        self._last_refresh_at: datetime | None = None

    async def run_forever(self) -> None:
        await connect_to_mongo()
        try:
            await ensure_indexes()
            LOGGER.info("Ranking worker started. Poll interval: %ss", self._poll_seconds)
            while True:
                await self.schedule_refresh_if_due()
                processed = await self.run_once()
                if not processed:
                    await asyncio.sleep(self._poll_seconds)
        finally:
            await close_mongo_connection()

    async def run_once(self) -> bool:
        job = await self._pick_next_job()
        if not job:
            return False
        await self._process_job(job)
        return True

    async def schedule_refresh_if_due(self, now: datetime | None = None) -> dict | None:
        interval_hours = int(settings.ranking_refresh_interval_hours)
        if interval_hours <= 0:
            return None
        reference = now or utc_now()
        if self._last_refresh_at is not None and reference - self._last_refresh_at < timedelta(hours=interval_hours):
            return None

        self._last_refresh_at = reference
        summary = await self._service.enqueue_stale_cohorts(now=reference)
        LOGGER.info(
            "Scheduled ranking refresh cohorts=%s queued=%s", len(summary["cohorts"]), summary["jobs_queued"]
        )
        return summary

    def _jobs(self):
        database = self._database if self._database is not None else get_database()
        return database[self._JOBS_COLLECTION]

    async def _pick_next_job(self) -> dict | None:
        jobs = self._jobs()
        now = utc_now()
        update = {
            "$set": {
                "status": "running",
                "started_at": now,
                "updated_at": now,
                "progress": {"stage": "worker_started", "message": "Worker started processing job.", "updated_at": now},
            },
            "$push": {"events": _job_event("worker_started", "Worker started processing job.", {}, now)},
            "$inc": {"attempts": 1},
        }
        job = await jobs.find_one_and_update(
            {"status": "queued"},
            update,
            sort=[("created_at", 1)],
            return_document=ReturnDocument.AFTER,
        )
        if job is not None:
            return job

        # a running job whose lease lapsed was left behind by a dead worker
        job = await jobs.find_one_and_update(
            {"status": "running", "updated_at": {"$lt": job_lease_cutoff(now)}},
            update,
            sort=[("created_at", 1)],
            return_document=ReturnDocument.AFTER,
        )
        if job is not None:
            LOGGER.warning("Reclaimed abandoned job=%s attempts=%s", job.get("_id"), job.get("attempts"))
        return job

    async def _process_job(self, job: dict) -> None:
        jobs = self._jobs()
        job_id = job.get("_id")
        city = str(job.get("city", "")).strip()
        category_id = str(job.get("category_id", "")).strip()
        include_aspects = bool(job.get("include_aspects", False))
        LOGGER.info(
            "Processing job=%s city=%r category=%r include_aspects=%s", job_id, city, category_id, include_aspects
        )

        async def on_progress(event: dict[str, Any]) -> None:
            data = event.get("data", {})
            await self._emit_job_event(
                jobs=jobs,
                job_id=job_id,
                stage=str(event.get("stage", "") or "running"),
                message=str(event.get("message", "") or "In progress."),
                data=data if isinstance(data, dict) else {},
            )

        try:
            result = await self._service.run_cohort_job(
                city,
                category_id,
                include_aspects=include_aspects,
                progress_callback=on_progress,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Job failed=%s", job_id)
            await self._emit_job_event(
                jobs=jobs,
                job_id=job_id,
                stage="failed",
                message=str(exc),
                data={"error": str(exc)},
                fields={"status": "failed", "error": str(exc)},
            )
            return

        await self._emit_job_event(
            jobs=jobs,
            job_id=job_id,
            stage="done",
            message="Job completed successfully.",
            data={"calculated": result["statistics"].get("calculated")},
            fields={"status": "done", "result": result, "error": None},
        )
        LOGGER.info("Job done=%s", job_id)

    async def _emit_job_event(
        self,
        *,
        jobs,
        job_id: Any,
        stage: str,
        message: str,
        data: dict[str, Any] | None = None,
        fields: dict[str, Any] | None = None,
    ) -> None:
        now = utc_now()
        update_set: dict[str, Any] = {
            "updated_at": now,
            "progress": {"stage": stage, "message": message, "updated_at": now},
        }
        if fields:
            update_set.update(fields)
            update_set["finished_at"] = now
        await jobs.update_one(
            {"_id": job_id},
            {"$set": update_set, "$push": {"events": _job_event(stage, message, data, now)}},
        )


async def _main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    worker = RankingWorker()
    await worker.run_forever()


if __name__ == "__main__":
    asyncio.run(_main())
