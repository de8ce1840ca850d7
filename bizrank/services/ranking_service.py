from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from bizrank.config import settings
from bizrank.models.business import Business
from bizrank.models.ranking import (
    ASPECTS,
    RANKING_TYPES,
    AspectRankingRun,
    CohortState,
    RankedEntry,
    RankingCacheEntry,
    RankingError,
    RankingRun,
    build_cache_key,
)
from bizrank.models.review import Review
from bizrank.pipeline.clock import as_utc, utc_now
from bizrank.pipeline.ranking_engine import RankingEngine
from bizrank.pipeline.weights import RankingConfig
from bizrank.services.base import MongoService

LOGGER = logging.getLogger("ranking_service")


def job_lease_cutoff(now: datetime | None = None) -> datetime:
    return (now or utc_now()) - timedelta(minutes=settings.ranking_job_lease_minutes)


class RankingService(MongoService):
    _CACHE_COLLECTION = "ranking_cache"
    _JOBS_COLLECTION = "ranking_jobs"

    def __init__(
        self,
        database: AsyncIOMotorDatabase | None = None,
        config: RankingConfig | None = None,
    ) -> None:
        super().__init__(database)
        self.engine = RankingEngine(config)

    async def calculate_cohort_rankings(
        self,
        city: str,
        category_id: str,
        *,
        now: datetime | None = None,
    ) -> RankingRun:
        city_value, category_value = self._validate_cohort(city, category_id)
        reference = now or utc_now()

        cohort, load_errors, total = await self._load_cohort(city_value, category_value, with_reviews=True)
        previous = await self._read_cache(build_cache_key(city_value, category_value, "overall"))
        run = self.engine.rank_cohort(
            city=city_value,
            category_id=category_value,
            cohort=cohort,
            now=reference,
            cohort_updated_at=previous.last_updated if previous is not None else None,
        )
        if load_errors:
            run.errors = load_errors + run.errors
        run.statistics.total_businesses = total
        run.statistics.failed = len(run.errors)
        if total == 0:
            run.message = "No businesses found"

        businesses = self._db()[self._BUSINESSES_COLLECTION]
        for item in run.rankings:
            await businesses.update_one(
                {"_id": self._parse_object_id(item.business_id, field_name="business_id")},
                {
                    "$set": {
                        "city_ranking": item.rank,
                        "category_ranking": item.rank,
                        "last_ranking_update": reference,
                    }
                },
            )

        ranked_ids = {item.business_id for item in run.rankings}
        member_ids = [str(business.id) for business, _ in cohort] + [error.business_id for error in load_errors]
        for business_id in member_ids:
            if business_id in ranked_ids:
                continue
            await businesses.update_one(
                {"_id": self._parse_object_id(business_id, field_name="business_id")},
                {"$unset": {"city_ranking": "", "category_ranking": ""}},
            )

        if total:
            await self._write_cache(
                city=city_value,
                category_id=category_value,
                ranking_type="overall",
                entries=[
                    RankedEntry(business_id=item.business_id, rank=item.rank, score=round(item.final_score, 4))
                    for item in run.rankings
                ],
                now=reference,
            )

        LOGGER.info(
            "Cohort ranked city=%r category=%r calculated=%s skipped=%s failed=%s outliers=%s",
            city_value,
            category_value,
            run.statistics.calculated,
            run.statistics.skipped,
            run.statistics.failed,
            run.statistics.outliers,
        )
        return run

    async def calculate_aspect_rankings(
        self,
        city: str,
        category_id: str,
        aspect: str,
        *,
        now: datetime | None = None,
    ) -> AspectRankingRun:
        city_value, category_value = self._validate_cohort(city, category_id)
        aspect_value = str(aspect or "").strip().lower()
        if aspect_value not in ASPECTS:
            raise ValueError(f"Unsupported aspect '{aspect}'. Expected one of: {', '.join(ASPECTS)}.")
        reference = now or utc_now()

        cohort, load_errors, total = await self._load_cohort(city_value, category_value, with_reviews=False)
        run = self.engine.rank_aspect(
            city=city_value,
            category_id=category_value,
            aspect=aspect_value,
            businesses=[business for business, _ in cohort],
            now=reference,
        )
        if load_errors:
            run.errors = load_errors + run.errors

        businesses = self._db()[self._BUSINESSES_COLLECTION]
        for item in run.rankings:
            await businesses.update_one(
                {"_id": self._parse_object_id(item.business_id, field_name="business_id")},
                {"$set": {f"aspect_rankings.{aspect_value}": item.rank}},
            )

        if total:
            await self._write_cache(
                city=city_value,
                category_id=category_value,
                ranking_type=aspect_value,
                entries=[
                    RankedEntry(business_id=item.business_id, rank=item.rank, score=item.score) for item in run.rankings
                ],
                now=reference,
            )
        return run

    async def get_cached_rankings(
        self,
        city: str,
        category_id: str,
        ranking_type: str = "overall",
        *,
        limit: int | None = None,
        allow_stale: bool = False,
        now: datetime | None = None,
    ) -> dict:
        city_value, category_value = self._validate_cohort(city, category_id)
        ranking_type_value = self._validate_ranking_type(ranking_type)
        limit_value = self._coerce_limit(limit, default=50, max_limit=500)
        reference = now or utc_now()
        cache_key = build_cache_key(city_value, category_value, ranking_type_value)

        entry = await self._read_cache(cache_key)
        base_payload: dict[str, Any] = {
            "cache_key": cache_key,
            "city": city_value,
            "category_id": category_value,
            "ranking_type": ranking_type_value,
        }

        if entry is None:
            job = await self.enqueue_ranking_job(
                city_value, category_value, include_aspects=ranking_type_value != "overall"
            )
            return self._sanitize_response_payload(
                {
                    **base_payload,
                    "rankings": [],
                    "cached": False,
                    "stale": False,
                    "expired": False,
                    "last_updated": None,
                    "version": None,
                    "job_id": job["job_id"],
                    "message": "No cached rankings found. Recalculation scheduled.",
                }
            )

        expired = entry.is_expired(reference)
        if expired and not allow_stale:
            job = await self.enqueue_ranking_job(
                city_value, category_value, include_aspects=ranking_type_value != "overall"
            )
            return self._sanitize_response_payload(
                {
                    **base_payload,
                    "rankings": [],
                    "cached": False,
                    "stale": False,
                    "expired": True,
                    "last_updated": entry.last_updated,
                    "version": entry.version,
                    "job_id": job["job_id"],
                    "message": "Cached rankings expired. Recalculation scheduled.",
                }
            )

        rankings = await self._enrich_rankings(entry.rankings[:limit_value])
        return self._sanitize_response_payload(
            {
                **base_payload,
                "rankings": rankings,
                "cached": True,
                "stale": expired,
                "expired": expired,
                "last_updated": entry.last_updated,
                "expires_at": entry.expires_at,
                "version": entry.version,
            }
        )

    async def get_cohort_state(
        self,
        city: str,
        category_id: str,
        ranking_type: str = "overall",
        *,
        now: datetime | None = None,
    ) -> CohortState:
        city_value, category_value = self._validate_cohort(city, category_id)
        ranking_type_value = self._validate_ranking_type(ranking_type)

        if await self._find_active_job(city_value, category_value) is not None:
            return "computing"

        entry = await self._read_cache(build_cache_key(city_value, category_value, ranking_type_value))
        if entry is None:
            return "idle"
        if entry.is_expired(now or utc_now()):
            return "stale"
        return "cached"

    async def enqueue_ranking_job(self, city: str, category_id: str, *, include_aspects: bool = False) -> dict:
        city_value, category_value = self._validate_cohort(city, category_id)

        existing = await self._find_active_job(city_value, category_value)
        if existing is not None:
            if include_aspects and not existing.get("include_aspects"):
                await self._db()[self._JOBS_COLLECTION].update_one(
                    {"_id": existing["_id"]}, {"$set": {"include_aspects": True}}
                )
            return self._sanitize_response_payload(
                {
                    "job_id": str(existing["_id"]),
                    "city": city_value,
                    "category_id": category_value,
                    "status": existing.get("status"),
                    "include_aspects": bool(existing.get("include_aspects")) or include_aspects,
                    "created_at": existing.get("created_at"),
                    "deduplicated": True,
                }
            )

        await self._expire_abandoned_jobs(city_value, category_value)
        now = utc_now()
        initial_event = {
            "stage": "queued",
            "message": "Job queued.",
            "data": {"include_aspects": bool(include_aspects)},
            "created_at": now,
        }
        doc = {
            "city": city_value,
            "category_id": category_value,
            "cohort_key": build_cache_key(city_value, category_value, "*"),
            "include_aspects": bool(include_aspects),
            "status": "queued",
            "progress": {"stage": "queued", "message": "Job queued.", "updated_at": now},
            "events": [initial_event],
            "attempts": 0,
            "error": None,
            "result": None,
            "created_at": now,
            "updated_at": now,
            "started_at": None,
            "finished_at": None,
        }
        inserted = await self._db()[self._JOBS_COLLECTION].insert_one(doc)
        LOGGER.info("Ranking job queued job=%s city=%r category=%r", inserted.inserted_id, city_value, category_value)
        return self._sanitize_response_payload(
            {
                "job_id": str(inserted.inserted_id),
                "city": city_value,
                "category_id": category_value,
                "status": "queued",
                "include_aspects": bool(include_aspects),
                "created_at": now,
                "deduplicated": False,
            }
        )

    async def enqueue_stale_cohorts(self, *, now: datetime | None = None, include_aspects: bool = True) -> dict:
        reference = now or utc_now()
        since = reference - timedelta(hours=settings.ranking_refresh_activity_hours)
        database = self._db()
        reviews = database[self._REVIEWS_COLLECTION]
        businesses = database[self._BUSINESSES_COLLECTION]

        active_ids: set[str] = set()
        for field in ("created_at", "imported_at"):
            docs = await reviews.find({field: {"$gte": since}}).to_list(length=None)
            active_ids.update(str(doc.get("business_id")) for doc in docs if doc.get("business_id"))

        object_ids = []
        for business_id in sorted(active_ids):
            try:
                object_ids.append(self._parse_object_id(business_id, field_name="business_id"))
            except ValueError:
                LOGGER.warning("Ignoring review activity for invalid business_id=%r", business_id)

        candidates = await businesses.find({"_id": {"$in": object_ids}, "active": {"$ne": False}}).to_list(length=None)
        candidates += await businesses.find({"last_ranking_update": None, "active": {"$ne": False}}).to_list(
            length=None
        )

        cohorts: list[tuple[str, str]] = []
        seen_business_ids: set[str] = set()
        for doc in candidates:
            seen_business_ids.add(str(doc["_id"]))
            cohort = (str(doc.get("city") or "").strip(), str(doc.get("category_id") or "").strip())
            if not all(cohort) or cohort in cohorts:
                continue
            cohorts.append(cohort)

        jobs: list[dict[str, Any]] = []
        for city, category_id in sorted(cohorts):
            jobs.append(await self.enqueue_ranking_job(city, category_id, include_aspects=include_aspects))

        queued = sum(1 for job in jobs if not job["deduplicated"])
        LOGGER.info(
            "Stale cohorts scheduled businesses=%s cohorts=%s queued=%s", len(seen_business_ids), len(jobs), queued
        )
        return {
            "businesses_considered": len(seen_business_ids),
            "cohorts": [
                {"city": job["city"], "category_id": job["category_id"], "job_id": job["job_id"]} for job in jobs
            ],
            "jobs_queued": queued,
            "jobs_deduplicated": len(jobs) - queued,
        }

    async def get_ranking_job(self, job_id: str) -> dict:
        parsed_id = self._parse_object_id(job_id, field_name="job_id")
        job_doc = await self._db()[self._JOBS_COLLECTION].find_one({"_id": parsed_id})
        if job_doc is None:
            raise LookupError(f"Job '{job_id}' not found.")
        payload = {key: value for key, value in job_doc.items() if key != "_id"}
        payload["job_id"] = str(job_doc["_id"])
        return self._sanitize_response_payload(payload)

    async def run_cohort_job(
        self,
        city: str,
        category_id: str,
        *,
        include_aspects: bool = False,
        progress_callback: Callable[[dict[str, Any]], Awaitable[None] | None] | None = None,
    ) -> dict:
        await self._emit_progress(progress_callback, "ranking_started", "Overall ranking started.", {})
        run = await self.calculate_cohort_rankings(city, category_id)
        await self._emit_progress(
            progress_callback,
            "ranking_completed",
            "Overall ranking completed.",
            run.statistics.model_dump(mode="python"),
        )

        aspects: dict[str, Any] = {}
        if include_aspects:
            for aspect in settings.ranking_aspects:
                if aspect not in ASPECTS:
                    LOGGER.warning("Skipping unknown ranking aspect=%r", aspect)
                    continue
                aspect_run = await self.calculate_aspect_rankings(city, category_id, aspect)
                aspects[aspect] = {"ranked": len(aspect_run.rankings), "errors": len(aspect_run.errors)}
                await self._emit_progress(
                    progress_callback,
                    "aspect_completed",
                    f"{aspect.capitalize()} ranking completed.",
                    {"aspect": aspect, "ranked": len(aspect_run.rankings)},
                )

        return {
            "city": run.city,
            "category_id": run.category_id,
            "statistics": run.statistics.model_dump(mode="python"),
            "errors": [error.model_dump(mode="python") for error in run.errors],
            "aspects": aspects,
        }

    async def _load_cohort(
        self,
        city: str,
        category_id: str,
        *,
        with_reviews: bool,
    ) -> tuple[list[tuple[Business, list[Review]]], list[RankingError], int]:
        docs = (
            await self._db()[self._BUSINESSES_COLLECTION]
            .find({"city": city, "category_id": category_id, "active": {"$ne": False}})
            .sort([("_id", 1)])
            .to_list(length=None)
        )

        cohort: list[tuple[Business, list[Review]]] = []
        errors: list[RankingError] = []
        for doc in docs:
            business_id = str(doc.get("_id"))
            name = str(doc.get("name", ""))
            try:
                business = self._business_from_doc(doc)
                reviews = await self._load_reviews(business_id) if with_reviews else []
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Skipping malformed business=%s name=%r", business_id, name)
                errors.append(RankingError(business_id=business_id, name=name, error=str(exc)))
                continue
            cohort.append((business, reviews))
        return cohort, errors, len(docs)

    async def _write_cache(
        self,
        *,
        city: str,
        category_id: str,
        ranking_type: str,
        entries: list[RankedEntry],
        now: datetime,
    ) -> RankingCacheEntry:
        cache_key = build_cache_key(city, category_id, ranking_type)
        doc = await self._db()[self._CACHE_COLLECTION].find_one_and_update(
            {"cache_key": cache_key},
            {
                "$set": {
                    "city": city,
                    "category_id": category_id,
                    "ranking_type": ranking_type,
                    "rankings": [entry.model_dump(mode="python") for entry in entries],
                    "last_updated": now,
                    "expires_at": now + timedelta(days=settings.ranking_cache_ttl_days),
                },
                "$inc": {"version": 1},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise RuntimeError(f"Failed to upsert ranking cache '{cache_key}'.")
        return self._cache_entry_from_doc(doc)

    async def _read_cache(self, cache_key: str) -> RankingCacheEntry | None:
        doc = await self._db()[self._CACHE_COLLECTION].find_one({"cache_key": cache_key})
        if doc is None:
            return None
        return self._cache_entry_from_doc(doc)

    def _cache_entry_from_doc(self, doc: dict[str, Any]) -> RankingCacheEntry:
        payload = {key: value for key, value in doc.items() if key not in {"_id", "created_at"}}
        payload["last_updated"] = as_utc(payload["last_updated"])
        payload["expires_at"] = as_utc(payload["expires_at"])
        return RankingCacheEntry(**payload)

    async def _enrich_rankings(self, entries: list[RankedEntry]) -> list[dict[str, Any]]:
        object_ids = [self._parse_object_id(entry.business_id, field_name="business_id") for entry in entries]
        docs = await self._db()[self._BUSINESSES_COLLECTION].find({"_id": {"$in": object_ids}}).to_list(length=None)
        by_id = {str(doc["_id"]): doc for doc in docs}

        rankings: list[dict[str, Any]] = []
        for entry in entries:
            business_doc = by_id.get(entry.business_id)
            if business_doc is None:
                continue
            rankings.append(
                {
                    **entry.model_dump(mode="python"),
                    "business": {
                        "name": business_doc.get("name", ""),
                        "plan_tier": business_doc.get("plan_tier", "free"),
                        "verified": bool(business_doc.get("verified", False)),
                        "rating": business_doc.get("rating"),
                        "review_count": int(business_doc.get("review_count") or 0),
                        "city": business_doc.get("city", ""),
                    },
                }
            )
        return rankings

    async def _find_active_job(self, city: str, category_id: str) -> dict | None:
        jobs = self._db()[self._JOBS_COLLECTION]
        queued = await jobs.find_one({"city": city, "category_id": category_id, "status": "queued"})
        if queued is not None:
            return queued
        # running jobs hold a lease that every progress event renews
        return await jobs.find_one(
            {
                "city": city,
                "category_id": category_id,
                "status": "running",
                "updated_at": {"$gte": job_lease_cutoff()},
            }
        )

    async def _expire_abandoned_jobs(self, city: str, category_id: str) -> int:
        now = utc_now()
        result = await self._db()[self._JOBS_COLLECTION].update_many(
            {
                "city": city,
                "category_id": category_id,
                "status": "running",
                "updated_at": {"$lt": job_lease_cutoff(now)},
            },
            {
                "$set": {
                    "status": "failed",
                    "error": "Job lease expired.",
                    "finished_at": now,
                    "updated_at": now,
                    "progress": {"stage": "failed", "message": "Job lease expired.", "updated_at": now},
                }
            },
        )
        if result.modified_count:
            LOGGER.warning(
                "Expired abandoned ranking jobs city=%r category=%r count=%s", city, category_id, result.modified_count
            )
        return result.modified_count

    async def _emit_progress(
        self,
        callback: Callable[[dict[str, Any]], Awaitable[None] | None] | None,
        stage: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        if callback is None:
            return
        payload = {
            "stage": stage,
            "message": message,
            "data": data or {},
            "created_at": utc_now(),
        }
        try:
            maybe_awaitable = callback(payload)
            if asyncio.iscoroutine(maybe_awaitable):
                await maybe_awaitable
        except Exception:  # noqa: BLE001
            LOGGER.warning("Progress callback failed stage=%s", stage, exc_info=True)

    def _validate_cohort(self, city: str, category_id: str) -> tuple[str, str]:
        city_value = str(city or "").strip()
        category_value = str(category_id or "").strip()
        if not city_value:
            raise ValueError("city is required.")
        if not category_value:
            raise ValueError("category_id is required.")
        return city_value, category_value

    def _validate_ranking_type(self, ranking_type: str) -> str:
        value = str(ranking_type or "").strip().lower()
        if value not in RANKING_TYPES:
            raise ValueError(f"Unsupported ranking_type '{ranking_type}'. Expected one of: {', '.join(RANKING_TYPES)}.")
        return value
