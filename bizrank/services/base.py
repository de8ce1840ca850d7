from __future__ import annotations

from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from bizrank.database import get_database
from bizrank.models.business import Business
from bizrank.models.review import Review


class MongoService:
    _BUSINESSES_COLLECTION = "businesses"
    _REVIEWS_COLLECTION = "reviews"

    def __init__(self, database: AsyncIOMotorDatabase | None = None) -> None:
        self._database = database

    def _db(self) -> AsyncIOMotorDatabase:
        if self._database is not None:
            return self._database
        return get_database()

    async def _load_business(self, business_id: str) -> Business:
        parsed_id = self._parse_object_id(business_id, field_name="business_id")
        business_doc = await self._db()[self._BUSINESSES_COLLECTION].find_one({"_id": parsed_id})
        if business_doc is None:
            raise LookupError(f"Business '{business_id}' not found.")
        return self._business_from_doc(business_doc)

    async def _load_reviews(self, business_id: str, *, displayed_only: bool = True) -> list[Review]:
        query: dict[str, Any] = {"business_id": business_id}
        if displayed_only:
            query["is_displayed"] = {"$ne": False}
        docs = await self._db()[self._REVIEWS_COLLECTION].find(query).sort([("created_at", 1), ("_id", 1)]).to_list(
            length=None
        )
        return [self._review_from_doc(doc) for doc in docs]

    def _business_from_doc(self, business_doc: dict[str, Any]) -> Business:
        payload = {key: value for key, value in business_doc.items() if key != "_id"}
        payload["id"] = str(business_doc.get("_id"))
        return Business(**payload)

    def _review_from_doc(self, review_doc: dict[str, Any]) -> Review:
        payload = {key: value for key, value in review_doc.items() if key != "_id"}
        payload["id"] = str(review_doc.get("_id"))
        return Review(**payload)

    def _parse_object_id(self, value: str, *, field_name: str) -> ObjectId:
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError) as exc:
            raise ValueError(f"Invalid {field_name}. Expected a Mongo ObjectId string.") from exc

    def _coerce_limit(self, limit: int | None, *, default: int, max_limit: int) -> int:
        if limit is None:
            return default
        try:
            limit_value = int(limit)
        except (TypeError, ValueError) as exc:
            raise ValueError("Invalid limit. It must be an integer >= 1.") from exc
        if limit_value < 1:
            raise ValueError("Invalid limit. It must be an integer >= 1.")
        return min(limit_value, max_limit)

    def _sanitize_response_payload(self, value: Any) -> Any:
        if isinstance(value, ObjectId):
            return str(value)
        if isinstance(value, dict):
            return {key: self._sanitize_response_payload(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._sanitize_response_payload(item) for item in value]
        return value
