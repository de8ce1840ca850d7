from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, get_args

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from bizrank.config import settings
from bizrank.models.business import Business
from bizrank.models.imports import BusinessMatchSummary, ImportResult
from bizrank.models.matching import BusinessMatch
from bizrank.models.review import ReviewImportItem, ReviewSource
from bizrank.pipeline.clock import utc_now
from bizrank.pipeline.deduplication import ReviewDeduplicator, find_duplicate_pairs, resolve_duplicate_pair
from bizrank.pipeline.identity_matcher import ReviewAttributor, identity_keys
from bizrank.pipeline.preprocessor import ReviewPreprocessor
from bizrank.pipeline.weights import MatchingConfig
from bizrank.services.base import MongoService

LOGGER = logging.getLogger("review_import_service")

_SUPPORTED_SOURCES = set(get_args(ReviewSource))
_ACTIVE_FILTER = {"active": {"$ne": False}}


class IndexedBusinessAttributor:
    def __init__(
        self,
        businesses: AsyncIOMotorCollection,
        config: MatchingConfig,
        business_from_doc: Callable[[dict[str, Any]], Business],
    ) -> None:
        self._businesses = businesses
        self.config = config
        self._business_from_doc = business_from_doc
        self._similarity_pool: ReviewAttributor | None = None

    @property
    def loaded_full_set(self) -> bool:
        return self._similarity_pool is not None

    async def attribute(self, item: ReviewImportItem) -> BusinessMatch | None:
        if item.place_id:
            doc = await self._find_active({"place_id": item.place_id})
            if doc is not None:
                return self._match(doc, self.config.place_id_confidence, "place_id")

        if item.business_id and ObjectId.is_valid(item.business_id):
            doc = await self._find_active({"_id": ObjectId(item.business_id)})
            if doc is not None:
                return self._match(doc, self.config.business_id_confidence, "business_id")

        keys = identity_keys(item.business_name, item.business_phone)
        if keys["name_normalized"] and keys["phone_normalized"]:
            doc = await self._find_active(keys)
            if doc is not None:
                return self._match(doc, self.config.name_phone_confidence, "name_phone")

        if self._similarity_pool is None:
            docs = await self._businesses.find(_ACTIVE_FILTER).to_list(length=None)
            self._similarity_pool = ReviewAttributor([self._business_from_doc(doc) for doc in docs], self.config)
        return self._similarity_pool.attribute_by_similarity(item)

    async def _find_active(self, query: dict[str, Any]) -> dict[str, Any] | None:
        return await self._businesses.find_one({**query, **_ACTIVE_FILTER})

    def _match(self, doc: dict[str, Any], confidence: int, match_type: str) -> BusinessMatch:
        return BusinessMatch(business_id=str(doc["_id"]), confidence=confidence, match_type=match_type)


class ReviewImportService(MongoService):
    _IMPORT_BATCHES_COLLECTION = "import_batches"

    def __init__(
        self,
        database: AsyncIOMotorDatabase | None = None,
        matching_config: MatchingConfig | None = None,
    ) -> None:
        super().__init__(database)
        self.matching_config = matching_config or MatchingConfig()
        self.preprocessor = ReviewPreprocessor()

    async def import_reviews(
        self,
        items: list[ReviewImportItem | dict[str, Any]],
        source: str,
        *,
        skip_duplicates: bool = True,
        now: datetime | None = None,
    ) -> ImportResult:
        if source not in _SUPPORTED_SOURCES:
            raise ValueError(f"Unsupported review source '{source}'.")
        payload = [item if isinstance(item, ReviewImportItem) else ReviewImportItem(**item) for item in items]
        if len(payload) > settings.import_batch_size_limit:
            raise ValueError(
                f"Import batch too large: {len(payload)} reviews (limit {settings.import_batch_size_limit})."
            )

        started_at = now or utc_now()
        database = self._db()
        batches = database[self._IMPORT_BATCHES_COLLECTION]
        reviews = database[self._REVIEWS_COLLECTION]

        inserted_batch = await batches.insert_one(
            {
                "import_type": "review_import",
                "source": source,
                "status": "processing",
                "review_count": len(payload),
                "skip_duplicates": bool(skip_duplicates),
                "created_at": started_at,
                "completed_at": None,
                "results": None,
                "errors": [],
            }
        )
        batch_id = str(inserted_batch.inserted_id)
        result = ImportResult(import_batch_id=batch_id)
        LOGGER.info("Import started batch=%s source=%s reviews=%s", batch_id, source, len(payload))

        try:
            await self.sync_business_identity_keys()
            attributor = self.build_attributor()
            deduplicator = await self._build_deduplicator([item.review_id for item in payload])
            touched_business_ids: set[str] = set()

            for item in payload:
                try:
                    match = await attributor.attribute(item)
                    if match is None:
                        result.failed += 1
                        result.errors.append(f"No matching business found for: {item.business_name}")
                        continue

                    if skip_duplicates:
                        await self._ensure_business_loaded(deduplicator, match.business_id)
                        check = deduplicator.check(
                            review_id=item.review_id,
                            business_id=match.business_id,
                            user_name=item.user_name,
                            comment=item.comment,
                        )
                        if check.is_duplicate:
                            result.duplicates += 1
                            continue

                    review = self.preprocessor.build_review(
                        item,
                        business_id=match.business_id,
                        source=source,
                        import_batch_id=batch_id,
                        now=started_at,
                    )
                    try:
                        inserted = await reviews.insert_one(review.model_dump(mode="python", exclude={"id"}))
                    except DuplicateKeyError:
                        result.duplicates += 1
                        deduplicator.mark_known(review.review_id)
                        continue

                    review.id = str(inserted.inserted_id)
                    deduplicator.register(review)
                    touched_business_ids.add(match.business_id)
                    result.successful += 1
                    result.business_matches.append(
                        BusinessMatchSummary(
                            business_name=item.business_name,
                            match_type=match.match_type,
                            confidence=match.confidence,
                        )
                    )
                except Exception as exc:  # noqa: BLE001
                    result.failed += 1
                    result.errors.append(f"Failed to import review for {item.business_name}: {exc}")
                    LOGGER.exception("Review import failed batch=%s review=%s", batch_id, item.review_id)

            for business_id in sorted(touched_business_ids):
                await self._refresh_business_stats(business_id)
        except Exception as exc:
            await batches.update_one(
                {"_id": inserted_batch.inserted_id},
                {"$set": {"status": "failed", "completed_at": utc_now(), "errors": [str(exc)]}},
            )
            LOGGER.exception("Import batch failed batch=%s", batch_id)
            raise

        await batches.update_one(
            {"_id": inserted_batch.inserted_id},
            {
                "$set": {
                    "status": "completed",
                    "completed_at": utc_now(),
                    "results": {
                        "created": result.successful,
                        "failed": result.failed,
                        "duplicates": result.duplicates,
                    },
                    "errors": result.errors,
                }
            },
        )
        LOGGER.info(
            "Import done batch=%s successful=%s failed=%s duplicates=%s",
            batch_id,
            result.successful,
            result.failed,
            result.duplicates,
        )
        return result

    async def check_duplicate(self, item: ReviewImportItem | dict[str, Any]) -> dict:
        review_item = item if isinstance(item, ReviewImportItem) else ReviewImportItem(**item)
        await self.sync_business_identity_keys()
        match = await self.build_attributor().attribute(review_item)

        existing = await self._db()[self._REVIEWS_COLLECTION].find_one({"review_id": review_item.review_id})
        payload: dict[str, Any] = {
            "review_id": review_item.review_id,
            "business_match": match.model_dump(mode="python") if match else None,
            "is_duplicate": False,
            "reason": None,
            "existing_review_id": None,
        }
        if existing is not None:
            payload.update({"is_duplicate": True, "reason": "exact_id", "existing_review_id": review_item.review_id})
            return self._sanitize_response_payload(payload)

        if match is not None:
            deduplicator = ReviewDeduplicator(comment_threshold=self.matching_config.duplicate_comment_threshold)
            await self._ensure_business_loaded(deduplicator, match.business_id)
            similar = deduplicator.find_similar(match.business_id, review_item.user_name, review_item.comment)
            if similar is not None:
                payload.update(
                    {"is_duplicate": True, "reason": "similar_content", "existing_review_id": similar.review_id}
                )
        return self._sanitize_response_payload(payload)

    async def flag_duplicates(self, business_id: str, *, dry_run: bool = True) -> dict:
        await self._load_business(business_id)
        reviews = await self._load_reviews(business_id)
        pairs = find_duplicate_pairs(reviews)

        removed_ids: set[str] = set()
        actions: list[dict[str, Any]] = []
        for pair in pairs:
            if pair.primary.id in removed_ids or pair.duplicate.id in removed_ids:
                continue
            resolution = resolve_duplicate_pair(pair.primary, pair.duplicate)
            removed_ids.add(str(resolution.remove.id))
            actions.append(
                {
                    "keep_review_id": resolution.keep.review_id,
                    "remove_review_id": resolution.remove.review_id,
                    "confidence": pair.confidence,
                    "reasons": pair.reasons,
                    "resolution": resolution.reason,
                }
            )

        if not dry_run and removed_ids:
            object_ids = [self._parse_object_id(review_id, field_name="review_id") for review_id in removed_ids]
            await self._db()[self._REVIEWS_COLLECTION].update_many(
                {"_id": {"$in": object_ids}},
                {"$set": {"flagged": True, "is_displayed": False, "updated_at": utc_now()}},
            )
            await self._refresh_business_stats(business_id)
            LOGGER.info("Flagged duplicates business=%s count=%s", business_id, len(removed_ids))

        return {
            "business_id": business_id,
            "dry_run": dry_run,
            "reviews_checked": len(reviews),
            "pairs_found": len(pairs),
            "flagged": len(removed_ids),
            "actions": actions,
        }

    async def sync_business_identity_keys(self) -> int:
        businesses = self._db()[self._BUSINESSES_COLLECTION]
        docs = await businesses.find({"name_normalized": None}).to_list(length=None)
        for doc in docs:
            await businesses.update_one(
                {"_id": doc["_id"]}, {"$set": identity_keys(doc.get("name"), doc.get("phone"))}
            )
        if docs:
            LOGGER.info("Backfilled business identity keys count=%s", len(docs))
        return len(docs)

    def build_attributor(self) -> IndexedBusinessAttributor:
        return IndexedBusinessAttributor(
            self._db()[self._BUSINESSES_COLLECTION], self.matching_config, self._business_from_doc
        )

    async def _build_deduplicator(self, review_ids: list[str]) -> ReviewDeduplicator:
        existing = await self._db()[self._REVIEWS_COLLECTION].find({"review_id": {"$in": review_ids}}).to_list(
            length=None
        )
        return ReviewDeduplicator(
            known_review_ids=[doc["review_id"] for doc in existing],
            comment_threshold=self.matching_config.duplicate_comment_threshold,
        )

    async def _ensure_business_loaded(self, deduplicator: ReviewDeduplicator, business_id: str) -> None:
        if deduplicator.has_business(business_id):
            return
        deduplicator.load_business_reviews(business_id, await self._load_reviews(business_id, displayed_only=False))

    async def _refresh_business_stats(self, business_id: str) -> None:
        reviews = await self._load_reviews(business_id)
        stats = self.preprocessor.compute_stats(reviews)
        business_oid = self._parse_object_id(business_id, field_name="business_id")
        await self._db()[self._BUSINESSES_COLLECTION].update_one(
            {"_id": business_oid},
            {
                "$set": {
                    "review_count": stats["review_count"],
                    "rating": stats["avg_rating"] if stats["review_count"] else None,
                    "updated_at": utc_now(),
                }
            },
        )
