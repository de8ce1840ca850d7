import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from bizrank.config import settings
from bizrank.database import close_mongo_connection, connect_to_mongo, ensure_indexes
from bizrank.services.ranking_service import RankingService


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rank one city+category cohort and print the run summary.")
    parser.add_argument("city", help="City of the cohort.")
    parser.add_argument("category_id", help="Category id of the cohort (e.g. plumbing).")
    parser.add_argument(
        "--aspects",
        action="store_true",
        help="Also compute the per-aspect leaderboards (speed, value, quality, reliability).",
    )
    parser.add_argument(
        "--compact",
        action="store_true",
        help="Print compact JSON output (single line).",
    )
    return parser.parse_args()


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


async def _run() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    await connect_to_mongo()
    try:
        await ensure_indexes()
        service = RankingService()
        run = await service.calculate_cohort_rankings(args.city, args.category_id)
        result: dict[str, Any] = run.model_dump(mode="python")
        if args.aspects:
            result["aspects"] = {}
            for aspect in settings.ranking_aspects:
                aspect_run = await service.calculate_aspect_rankings(args.city, args.category_id, aspect)
                result["aspects"][aspect] = aspect_run.model_dump(mode="python")
    finally:
        await close_mongo_connection()

    if args.compact:
        print(json.dumps(result, ensure_ascii=False, default=_json_default))
    else:
        print(json.dumps(result, ensure_ascii=False, indent=2, default=_json_default))


if __name__ == "__main__":
    asyncio.run(_run())
