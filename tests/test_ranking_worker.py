from datetime import datetime, timedelta, timezone

import pytest

from bizrank.services.ranking_service import RankingService
from bizrank.workers.ranking_worker import RankingWorker


async def _seed_business(database, name: str, speed_score: int) -> str:
    inserted = await database["businesses"].insert_one(
        {
            "name": name,
            "city": "Austin",
            "category_id": "plumbing",
            "speed_score": speed_score,
            "value_score": 60,
            "quality_score": 70,
            "reliability_score": 90,
        }
    )
    business_id = str(inserted.inserted_id)
    await database["reviews"].insert_one(
        {
            "business_id": business_id,
            "review_id": f"{name}-1",
            "rating": 5,
            "sentiment": {"classification": "positive"},
        }
    )
    return business_id


@pytest.mark.asyncio
async def test_run_once_processes_queued_job(database) -> None:
    leader = await _seed_business(database, "Fast Pipes", 95)
    await _seed_business(database, "Slow Pipes", 40)
    service = RankingService(database)
    worker = RankingWorker(database, service=service)
    queued = await service.enqueue_ranking_job("Austin", "plumbing", include_aspects=True)

    processed = await worker.run_once()

    assert processed is True
    job = await service.get_ranking_job(queued["job_id"])
    assert job["status"] == "done"
    assert job["attempts"] == 1
    assert job["error"] is None
    assert job["result"]["statistics"]["calculated"] == 2
    stages = [event["stage"] for event in job["events"]]
    assert stages[:4] == ["queued", "worker_started", "ranking_started", "ranking_completed"]
    assert stages.count("aspect_completed") == 4
    assert stages[-1] == "done"
    assert job["progress"]["stage"] == "done"

    cached = await service.get_cached_rankings("Austin", "plumbing")
    assert cached["cached"] is True
    assert cached["rankings"][0]["business_id"] == leader
    assert await service.get_cohort_state("Austin", "plumbing") == "cached"

    assert await worker.run_once() is False


@pytest.mark.asyncio
async def test_run_once_marks_failed_job(database) -> None:
    inserted = await database["ranking_jobs"].insert_one(
        {
            "city": "",
            "category_id": "plumbing",
            "include_aspects": False,
            "status": "queued",
            "events": [],
            "attempts": 0,
            "created_at": datetime.now(timezone.utc),
        }
    )
    service = RankingService(database)
    worker = RankingWorker(database, service=service)

    await worker.run_once()

    job = await service.get_ranking_job(str(inserted.inserted_id))
    assert job["status"] == "failed"
    assert job["error"] == "city is required."
    assert job["events"][-1]["stage"] == "failed"
    assert job["attempts"] == 1


@pytest.mark.asyncio
async def test_run_once_takes_oldest_job_first(database) -> None:
    await _seed_business(database, "Fast Pipes", 95)
    service = RankingService(database)
    worker = RankingWorker(database, service=service)
    first = await service.enqueue_ranking_job("Austin", "plumbing")
    second = await service.enqueue_ranking_job("Dallas", "plumbing")

    await worker.run_once()

    assert (await service.get_ranking_job(first["job_id"]))["status"] == "done"
    assert (await service.get_ranking_job(second["job_id"]))["status"] == "queued"


@pytest.mark.asyncio
async def test_run_once_reclaims_job_with_lapsed_lease(database) -> None:
    await _seed_business(database, "Fast Pipes", 95)
    abandoned_at = datetime.now(timezone.utc) - timedelta(hours=2)
    inserted = await database["ranking_jobs"].insert_one(
        {
            "city": "Austin",
            "category_id": "plumbing",
            "include_aspects": False,
            "status": "running",
            "events": [],
            "attempts": 1,
            "created_at": abandoned_at,
            "started_at": abandoned_at,
            "updated_at": abandoned_at,
        }
    )
    service = RankingService(database)
    worker = RankingWorker(database, service=service)

    assert await worker.run_once() is True

    job = await service.get_ranking_job(str(inserted.inserted_id))
    assert job["status"] == "done"
    assert job["attempts"] == 2
    assert job["result"]["statistics"]["calculated"] == 1


@pytest.mark.asyncio
async def test_run_once_leaves_live_running_job_alone(database) -> None:
    await database["ranking_jobs"].insert_one(
        {
            "city": "Austin",
            "category_id": "plumbing",
            "status": "running",
            "events": [],
            "attempts": 1,
            "created_at": datetime.now(timezone.utc),
            "updated_at": datetime.now(timezone.utc),
        }
    )
    worker = RankingWorker(database)

    assert await worker.run_once() is False


@pytest.mark.asyncio
async def test_schedule_refresh_if_due_runs_once_per_interval(database) -> None:
    await _seed_business(database, "Fast Pipes", 95)
    worker = RankingWorker(database)
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)

    first = await worker.schedule_refresh_if_due(now)
    skipped = await worker.schedule_refresh_if_due(now + timedelta(hours=1))
    next_day = await worker.schedule_refresh_if_due(now + timedelta(hours=25))

    assert first["jobs_queued"] == 1
    assert first["cohorts"][0]["city"] == "Austin"
    assert skipped is None
    assert next_day["jobs_queued"] == 0
    assert next_day["jobs_deduplicated"] == 1
    assert await database["ranking_jobs"].count_documents({}) == 1
