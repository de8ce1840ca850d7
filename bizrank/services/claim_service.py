from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from bizrank.database import get_client
from bizrank.models.business import PLAN_TIER_ORDER, Business
from bizrank.models.claim import AdminNote, Claim, ExternalLocation, GmbVerification
from bizrank.pipeline.clock import utc_now
from bizrank.pipeline.identity_matcher import IdentityMatcher
from bizrank.pipeline.weights import MatchingConfig
from bizrank.services.base import MongoService

LOGGER = logging.getLogger("claim_service")

_OPEN_STATUSES = ("pending", "needs_info")
_VERIFICATION_METHODS = {"documents", "gmb_oauth", "pending"}
_CLAIM_STATUSES = {"pending", "needs_info", "approved", "rejected"}


class ClaimConflictError(RuntimeError):
    """Raised when a claim transition collides with an existing claim decision."""


def build_approval_update(business: Business, user_id: str, now: datetime) -> dict[str, Any]:
    plan_tier = business.plan_tier
    if PLAN_TIER_ORDER.get(plan_tier, 0) < PLAN_TIER_ORDER["pro"]:
        plan_tier = "pro"
    return {
        "claimed": True,
        "verified": True,
        "claimed_by_user_id": user_id,
        "claimed_at": now,
        "plan_tier": plan_tier,
        "updated_at": now,
    }


class ClaimService(MongoService):
    _CLAIMS_COLLECTION = "claims"

    def __init__(
        self,
        database: AsyncIOMotorDatabase | None = None,
        client: AsyncIOMotorClient | None = None,
        matching_config: MatchingConfig | None = None,
    ) -> None:
        super().__init__(database)
        self._client = client
        self.matcher = IdentityMatcher(matching_config)

    async def submit_claim(
        self,
        business_id: str,
        user_id: str,
        *,
        verification_method: str = "pending",
        user_role: str = "",
        contact_info: dict[str, Any] | None = None,
    ) -> dict:
        if verification_method not in _VERIFICATION_METHODS:
            raise ValueError(f"Unsupported verification_method '{verification_method}'.")
        if not str(user_id or "").strip():
            raise ValueError("user_id is required.")

        business = await self._load_business(business_id)
        if business.claimed:
            raise ClaimConflictError("This business has already been claimed.")

        now = utc_now()
        doc = {
            "business_id": business_id,
            "user_id": str(user_id),
            "status": "pending",
            "verification_method": verification_method,
            "user_role": user_role,
            "contact_info": contact_info or {},
            "submitted_at": now,
            "reviewed_at": None,
            "reviewed_by": None,
            "admin_notes": [],
            "gmb_verification": None,
        }
        inserted = await self._db()[self._CLAIMS_COLLECTION].insert_one(doc)
        LOGGER.info("Claim submitted claim=%s business=%s user=%s", inserted.inserted_id, business_id, user_id)
        return self._sanitize_response_payload(
            {
                "claim_id": str(inserted.inserted_id),
                "status": "pending",
                "message": "Claim request submitted successfully",
            }
        )

    async def verify_claim_with_locations(
        self,
        claim_id: str,
        locations: Iterable[ExternalLocation | dict[str, Any]],
        *,
        google_account_email: str = "",
    ) -> dict:
        claim_doc = await self._load_open_claim(claim_id)
        business = await self._load_business(claim_doc["business_id"])
        candidates = [item if isinstance(item, ExternalLocation) else ExternalLocation(**item) for item in locations]

        result = self.matcher.match_business(business, candidates)
        now = utc_now()
        matched = result.matched_location
        verification = GmbVerification(
            google_account_email=google_account_email,
            gmb_location_id=matched.name if matched else "",
            matched_business_name=matched.display_name if matched else "",
            match_confidence=result.confidence,
            requires_manual_review=result.requires_manual_review,
            verification_details=result.details,
            failure_reason=result.failure_reason,
            verified_at=now,
        )
        claim_set: dict[str, Any] = {
            "verification_method": "gmb_oauth",
            "gmb_verification": verification.model_dump(mode="python"),
        }

        if result.verified:
            try:
                await self._approve_atomically(
                    claim_doc=claim_doc,
                    business=business,
                    claim_set={**claim_set, "status": "approved", "reviewed_at": now},
                    now=now,
                )
            except ClaimConflictError as exc:
                verification.failure_reason = str(exc)
                await self._db()[self._CLAIMS_COLLECTION].update_one(
                    {"_id": claim_doc["_id"], "status": {"$in": list(_OPEN_STATUSES)}},
                    {
                        "$set": {
                            "verification_method": "gmb_oauth",
                            "gmb_verification": verification.model_dump(mode="python"),
                        }
                    },
                )
                LOGGER.warning("Verified claim conflicts claim=%s business=%s: %s", claim_id, business.id, exc)
                raise
            status = "approved"
        else:
            claim_set["status"] = "pending"
            await self._db()[self._CLAIMS_COLLECTION].update_one({"_id": claim_doc["_id"]}, {"$set": claim_set})
            status = "pending"

        LOGGER.info(
            "Claim verified claim=%s classification=%s confidence=%s candidates=%s",
            claim_id,
            result.classification,
            result.confidence,
            result.candidates_evaluated,
        )
        payload = {
            "claim_id": claim_id,
            "status": status,
            "classification": result.classification,
            "verified": result.verified,
            "confidence": result.confidence,
            "requires_manual_review": result.requires_manual_review,
            "verification_details": result.details.model_dump(mode="python"),
            "matched_location": matched.model_dump(mode="python") if matched else None,
            "failure_reason": result.failure_reason,
        }
        return self._sanitize_response_payload(payload)

    async def approve_claim_manually(self, claim_id: str, admin_id: str, admin_notes: str | None = None) -> dict:
        claim_doc = await self._load_open_claim(claim_id)
        business = await self._load_business(claim_doc["business_id"])
        now = utc_now()
        note = AdminNote(admin=admin_id, note=admin_notes or "Approved manually.", action="approved", timestamp=now)

        await self._approve_atomically(
            claim_doc=claim_doc,
            business=business,
            claim_set={"status": "approved", "reviewed_at": now, "reviewed_by": admin_id},
            now=now,
            admin_note=note,
        )
        LOGGER.info("Claim approved manually claim=%s admin=%s", claim_id, admin_id)
        return {"claim_id": claim_id, "status": "approved", "success": True}

    async def reject_claim(
        self,
        claim_id: str,
        admin_id: str,
        reason: str,
        admin_notes: str | None = None,
    ) -> dict:
        reason_text = str(reason or "").strip()
        if not reason_text:
            raise ValueError("A rejection reason is required.")

        claim_doc = await self._load_open_claim(claim_id)
        now = utc_now()
        note_text = f"Rejected: {reason_text}" + (f" - {admin_notes}" if admin_notes else "")
        note = AdminNote(admin=admin_id, note=note_text, action="rejected", timestamp=now)

        result = await self._db()[self._CLAIMS_COLLECTION].update_one(
            {"_id": claim_doc["_id"], "status": {"$in": list(_OPEN_STATUSES)}},
            {
                "$set": {"status": "rejected", "reviewed_at": now, "reviewed_by": admin_id},
                "$push": {"admin_notes": note.model_dump(mode="python")},
            },
        )
        if result.matched_count == 0:
            raise ClaimConflictError(f"Claim '{claim_id}' has already been decided.")

        LOGGER.info("Claim rejected claim=%s admin=%s", claim_id, admin_id)
        return {"claim_id": claim_id, "status": "rejected", "success": True}

    async def list_claims_for_moderation(
        self,
        *,
        status: str | None = None,
        verification_method: str | None = None,
        limit: int | None = None,
    ) -> dict:
        limit_value = self._coerce_limit(limit, default=50, max_limit=200)
        query: dict[str, Any] = {}
        if status is not None:
            if status not in _CLAIM_STATUSES:
                raise ValueError(f"Unsupported status '{status}'.")
            query["status"] = status
        if verification_method is not None:
            if verification_method not in _VERIFICATION_METHODS:
                raise ValueError(f"Unsupported verification_method '{verification_method}'.")
            query["verification_method"] = verification_method

        database = self._db()
        claim_docs = (
            await database[self._CLAIMS_COLLECTION]
            .find(query)
            .sort([("submitted_at", -1), ("_id", -1)])
            .limit(limit_value)
            .to_list(length=limit_value)
        )

        business_ids = []
        for doc in claim_docs:
            try:
                business_ids.append(self._parse_object_id(doc.get("business_id"), field_name="business_id"))
            except ValueError:
                continue
        business_docs = await database[self._BUSINESSES_COLLECTION].find({"_id": {"$in": business_ids}}).to_list(
            length=None
        )
        businesses_by_id = {str(doc["_id"]): doc for doc in business_docs}

        items = []
        for doc in claim_docs:
            item = self._serialize_claim_doc(doc)
            business_doc = businesses_by_id.get(str(doc.get("business_id")))
            item["business"] = (
                {
                    "business_id": str(business_doc["_id"]),
                    "name": business_doc.get("name", ""),
                    "city": business_doc.get("city", ""),
                    "claimed": bool(business_doc.get("claimed", False)),
                }
                if business_doc
                else None
            )
            items.append(item)

        return self._sanitize_response_payload({"items": items, "total": len(items), "limit": limit_value})

    async def get_claim(self, claim_id: str) -> dict:
        parsed_id = self._parse_object_id(claim_id, field_name="claim_id")
        claim_doc = await self._db()[self._CLAIMS_COLLECTION].find_one({"_id": parsed_id})
        if claim_doc is None:
            raise LookupError(f"Claim '{claim_id}' not found.")
        return self._sanitize_response_payload(self._serialize_claim_doc(claim_doc))

    async def _load_open_claim(self, claim_id: str) -> dict[str, Any]:
        parsed_id = self._parse_object_id(claim_id, field_name="claim_id")
        claim_doc = await self._db()[self._CLAIMS_COLLECTION].find_one({"_id": parsed_id})
        if claim_doc is None:
            raise LookupError(f"Claim '{claim_id}' not found.")
        if claim_doc.get("status") not in _OPEN_STATUSES:
            raise ClaimConflictError(f"Claim '{claim_id}' has already been decided.")
        return claim_doc

    async def _approve_atomically(
        self,
        *,
        claim_doc: dict[str, Any],
        business: Business,
        claim_set: dict[str, Any],
        now: datetime,
        admin_note: AdminNote | None = None,
    ) -> None:
        database = self._db()
        claims = database[self._CLAIMS_COLLECTION]
        businesses = database[self._BUSINESSES_COLLECTION]
        business_oid = self._parse_object_id(str(business.id), field_name="business_id")
        business_set = build_approval_update(business, str(claim_doc["user_id"]), now)

        claim_update: dict[str, Any] = {"$set": claim_set}
        if admin_note is not None:
            claim_update["$push"] = {"admin_notes": admin_note.model_dump(mode="python")}

        client = self._client if self._client is not None else get_client()
        async with await client.start_session() as session:
            async with session.start_transaction():
                business_result = await businesses.update_one(
                    {"_id": business_oid, "claimed": {"$ne": True}},
                    {"$set": business_set},
                    session=session,
                )
                if business_result.matched_count == 0:
                    raise ClaimConflictError(f"Business '{business.id}' has already been claimed.")

                claim_result = await claims.update_one(
                    {"_id": claim_doc["_id"], "status": {"$in": list(_OPEN_STATUSES)}},
                    claim_update,
                    session=session,
                )
                if claim_result.matched_count == 0:
                    raise ClaimConflictError(f"Claim '{claim_doc['_id']}' has already been decided.")

    def _serialize_claim_doc(self, claim_doc: dict[str, Any]) -> dict:
        payload = {key: value for key, value in claim_doc.items() if key != "_id"}
        claim = Claim(id=str(claim_doc.get("_id")), **payload)
        serialized = claim.model_dump(mode="python", exclude={"id"})
        serialized["claim_id"] = claim.id
        return serialized
