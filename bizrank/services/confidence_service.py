from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from bizrank.config import settings
from bizrank.models.confidence import ConfidenceReport
from bizrank.pipeline.clock import utc_now
from bizrank.pipeline.confidence_scorer import ConfidenceScorer, confidence_recommendations
from bizrank.pipeline.similarity import round_half_up
from bizrank.pipeline.weights import ConfidenceWeights
from bizrank.services.base import MongoService

LOGGER = logging.getLogger("confidence_service")

_BUCKETS = (("0-20", 20), ("21-40", 40), ("41-60", 60), ("61-80", 80), ("81-100", 100))


class ConfidenceService(MongoService):
    def __init__(
        self,
        database: AsyncIOMotorDatabase | None = None,
        weights: ConfidenceWeights | None = None,
    ) -> None:
        super().__init__(database)
        self.scorer = ConfidenceScorer(weights)

    async def calculate_business_confidence(self, business_id: str, *, now: datetime | None = None) -> ConfidenceReport:
        await self._load_business(business_id)
        reviews = await self._load_reviews(business_id)
        report = self.scorer.score(reviews, business_id=business_id, now=now or utc_now())

        await self._db()[self._BUSINESSES_COLLECTION].update_one(
            {"_id": self._parse_object_id(business_id, field_name="business_id")},
            {
                "$set": {
                    "confidence_score": report.overall_confidence,
                    "confidence_updated_at": report.computed_at,
                }
            },
        )
        return report

    async def get_business_confidence_details(self, business_id: str, *, now: datetime | None = None) -> dict:
        business = await self._load_business(business_id)
        reviews = await self._load_reviews(business_id)
        reference = now or utc_now()
        report = self.scorer.score(reviews, business_id=business_id, now=reference)

        analyzed = [review for review in reviews if review.analyzed]
        sources: dict[str, int] = {}
        for review in reviews:
            sources[review.source] = sources.get(review.source, 0) + 1

        payload = {
            "business_id": business_id,
            "business_name": business.name,
            "stored_confidence": business.confidence_score,
            "report": report.model_dump(mode="python"),
            "review_stats": {
                "total": len(reviews),
                "analyzed": len(analyzed),
                "verified": sum(1 for review in reviews if review.verified),
                "with_performance_mentions": sum(1 for review in analyzed if review.has_performance_mention),
                "sources": sources,
            },
            "recommendations": confidence_recommendations(reviews, report.overall_confidence, now=reference),
        }
        return self._sanitize_response_payload(payload)

    async def calculate_batch_confidence(
        self,
        *,
        business_ids: list[str] | None = None,
        city: str | None = None,
        category_id: str | None = None,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> dict:
        limit_value = self._coerce_limit(limit, default=settings.confidence_batch_limit, max_limit=1000)
        reference = now or utc_now()

        if business_ids:
            targets = [(business_id, "") for business_id in business_ids]
        else:
            query: dict[str, Any] = {}
            if city:
                query["city"] = city
            if category_id:
                query["category_id"] = category_id
            docs = (
                await self._db()[self._BUSINESSES_COLLECTION]
                .find(query)
                .sort([("_id", 1)])
                .limit(limit_value)
                .to_list(length=limit_value)
            )
            targets = [(str(doc["_id"]), doc.get("name", "")) for doc in docs]

        processed = 0
        failed = 0
        results: list[dict[str, Any]] = []
        errors: list[dict[str, str]] = []
        for business_id, name in targets:
            try:
                report = await self.calculate_business_confidence(business_id, now=reference)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                errors.append({"business_id": business_id, "name": name, "error": str(exc)})
                LOGGER.exception("Confidence failed business=%s name=%r", business_id, name)
                continue
            processed += 1
            results.append({"business_id": business_id, "overall_confidence": report.overall_confidence})

        average = round_half_up(sum(item["overall_confidence"] for item in results) / len(results)) if results else 0
        return {
            "processed": processed,
            "failed": failed,
            "results": results,
            "errors": errors,
            "average_confidence": average,
        }

    async def get_confidence_analytics(self, *, city: str | None = None, category_id: str | None = None) -> dict:
        query: dict[str, Any] = {}
        if city:
            query["city"] = city
        if category_id:
            query["category_id"] = category_id
        docs = await self._db()[self._BUSINESSES_COLLECTION].find(query).to_list(length=None)
        scored = [doc for doc in docs if doc.get("confidence_score") is not None]

        if not scored:
            return {
                "total_businesses": len(docs),
                "businesses_with_confidence_scores": 0,
                "average_confidence": 0,
                "confidence_distribution": [],
                "low_confidence_businesses": [],
                "high_confidence_businesses": [],
                "quality_metrics": {"high_confidence_rate": 0, "medium_confidence_rate": 0, "low_confidence_rate": 0},
            }

        counts = {label: 0 for label, _ in _BUCKETS}
        for doc in scored:
            score = int(doc["confidence_score"])
            for label, upper in _BUCKETS:
                if score <= upper:
                    counts[label] += 1
                    break

        total = len(scored)
        distribution = [
            {"range": label, "count": counts[label], "percentage": round_half_up(counts[label] / total * 100)}
            for label, _ in _BUCKETS
        ]

        def _summary(doc: dict[str, Any]) -> dict[str, Any]:
            return {
                "business_id": str(doc["_id"]),
                "name": doc.get("name", ""),
                "city": doc.get("city", ""),
                "confidence": int(doc["confidence_score"]),
                "review_count": int(doc.get("review_count") or 0),
            }

        low = sorted(
            (doc for doc in scored if doc["confidence_score"] < 40),
            key=lambda d: (d["confidence_score"], str(d["_id"])),
        )
        high = sorted(
            (doc for doc in scored if doc["confidence_score"] >= 80),
            key=lambda d: (-d["confidence_score"], str(d["_id"])),
        )

        payload = {
            "total_businesses": len(docs),
            "businesses_with_confidence_scores": total,
            "average_confidence": round_half_up(sum(int(doc["confidence_score"]) for doc in scored) / total),
            "confidence_distribution": distribution,
            "low_confidence_businesses": [_summary(doc) for doc in low[:10]],
            "high_confidence_businesses": [_summary(doc) for doc in high[:10]],
            "quality_metrics": {
                "high_confidence_rate": round_half_up(counts["81-100"] / total * 100),
                "medium_confidence_rate": round_half_up((counts["41-60"] + counts["61-80"]) / total * 100),
                "low_confidence_rate": round_half_up((counts["0-20"] + counts["21-40"]) / total * 100),
            },
        }
        return self._sanitize_response_payload(payload)
