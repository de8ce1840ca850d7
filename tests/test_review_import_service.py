from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from bizrank.database import ensure_indexes
from bizrank.models.review import ReviewImportItem
from bizrank.services.review_import_service import ReviewImportService

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


async def _insert_business(database, **overrides) -> str:
    doc = {
        "name": "Joe's Plumbing",
        "phone": "512-555-0100",
        "address": "100 Congress Ave",
        "place_id": "place-1",
        "city": "Austin",
        "category_id": "plumbing",
    }
    doc.update(overrides)
    inserted = await database["businesses"].insert_one(doc)
    return str(inserted.inserted_id)


def _item(review_id: str = "g-1", **overrides) -> dict:
    payload = {
        "review_id": review_id,
        "rating": 5,
        "comment": "Fixed our leak in under an hour.",
        "user_name": "Jane",
        "business_name": "Joe's Plumbing",
        "place_id": "place-1",
        "verified": True,
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_import_reviews_attributes_and_persists(database) -> None:
    await ensure_indexes(database)
    business_id = await _insert_business(database)
    service = ReviewImportService(database)

    result = await service.import_reviews(
        [
            _item("g-1"),
            _item(
                "g-2",
                rating=3,
                comment="Decent work, a bit pricey.",
                user_name="Mark",
                place_id=None,
                business_phone="(512) 555-0100",
            ),
        ],
        "gmb_api",
        now=NOW,
    )

    assert result.successful == 2
    assert result.failed == 0
    assert result.duplicates == 0
    assert result.processed == 2
    assert [match.match_type for match in result.business_matches] == ["place_id", "name_phone"]

    stored = await database["reviews"].find({"business_id": business_id}).to_list(length=None)
    assert sorted(doc["review_id"] for doc in stored) == ["g-1", "g-2"]
    assert all(doc["import_batch_id"] == result.import_batch_id for doc in stored)

    business_doc = await database["businesses"].find_one({"_id": ObjectId(business_id)})
    assert business_doc["review_count"] == 2
    assert business_doc["rating"] == 4.0

    batch = await database["import_batches"].find_one({"_id": ObjectId(result.import_batch_id)})
    assert batch["status"] == "completed"
    assert batch["results"] == {"created": 2, "failed": 0, "duplicates": 0}


@pytest.mark.asyncio
async def test_import_same_review_twice_counts_duplicate(database) -> None:
    await ensure_indexes(database)
    await _insert_business(database)
    service = ReviewImportService(database)

    first = await service.import_reviews([_item("g-1")], "gmb_api", now=NOW)
    second = await service.import_reviews([_item("g-1")], "gmb_api", now=NOW)

    assert first.successful == 1
    assert second.successful == 0
    assert second.duplicates == 1
    assert await database["reviews"].count_documents({}) == 1


@pytest.mark.asyncio
async def test_import_detects_similar_content_within_batch(database) -> None:
    await ensure_indexes(database)
    await _insert_business(database)
    service = ReviewImportService(database)

    result = await service.import_reviews(
        [_item("g-1"), _item("y-9", comment="Fixed our leak in under an hour")],
        "yelp_import",
        now=NOW,
    )

    assert result.successful == 1
    assert result.duplicates == 1


@pytest.mark.asyncio
async def test_import_without_duplicate_checks_relies_on_unique_index(database) -> None:
    await ensure_indexes(database)
    await _insert_business(database)
    service = ReviewImportService(database)

    await service.import_reviews([_item("g-1")], "gmb_api", now=NOW)
    result = await service.import_reviews([_item("g-1")], "gmb_api", skip_duplicates=False, now=NOW)

    assert result.successful == 0
    assert result.duplicates == 1


@pytest.mark.asyncio
async def test_import_reports_unmatched_reviews(database) -> None:
    await ensure_indexes(database)
    await _insert_business(database)
    service = ReviewImportService(database)

    result = await service.import_reviews(
        [_item("g-1", business_name="Nobody", place_id=None)],
        "gmb_api",
        now=NOW,
    )

    assert result.failed == 1
    assert result.errors == ["No matching business found for: Nobody"]


@pytest.mark.asyncio
async def test_import_rejects_unknown_source(database) -> None:
    service = ReviewImportService(database)

    with pytest.raises(ValueError):
        await service.import_reviews([_item()], "myspace")


@pytest.mark.asyncio
async def test_check_duplicate_reports_existing_review(database) -> None:
    await ensure_indexes(database)
    await _insert_business(database)
    service = ReviewImportService(database)
    await service.import_reviews([_item("g-1")], "gmb_api", now=NOW)

    exact = await service.check_duplicate(_item("g-1"))
    similar = await service.check_duplicate(_item("g-2", comment="Fixed our leak in under an hour!"))
    fresh = await service.check_duplicate(_item("g-3", user_name="Someone Else", comment="Great."))

    assert exact["is_duplicate"] is True
    assert exact["reason"] == "exact_id"
    assert similar["reason"] == "similar_content"
    assert similar["existing_review_id"] == "g-1"
    assert fresh["is_duplicate"] is False
    assert fresh["business_match"]["match_type"] == "place_id"


@pytest.mark.asyncio
async def test_flag_duplicates_hides_lower_authority_copy(database) -> None:
    business_id = await _insert_business(database)
    base = {
        "business_id": business_id,
        "rating": 5,
        "comment": "Fixed our leak in under an hour.",
        "user_name": "Jane",
        "created_at": NOW,
    }
    await database["reviews"].insert_one({**base, "review_id": "g-1", "source": "gmb_api"})
    await database["reviews"].insert_one(
        {**base, "review_id": "y-1", "source": "yelp_import", "created_at": NOW + timedelta(hours=2)}
    )
    await database["reviews"].insert_one(
        {
            **base,
            "review_id": "d-1",
            "source": "direct",
            "user_name": "Mark",
            "rating": 2,
            "comment": "Late and rude.",
            "created_at": NOW - timedelta(days=30),
        }
    )
    service = ReviewImportService(database)

    preview = await service.flag_duplicates(business_id, dry_run=True)

    assert preview["pairs_found"] == 1
    assert preview["flagged"] == 1
    assert preview["actions"][0]["keep_review_id"] == "g-1"
    assert preview["actions"][0]["remove_review_id"] == "y-1"
    assert await database["reviews"].count_documents({"flagged": True}) == 0

    applied = await service.flag_duplicates(business_id, dry_run=False)

    assert applied["flagged"] == 1
    hidden = await database["reviews"].find_one({"review_id": "y-1"})
    assert hidden["flagged"] is True
    assert hidden["is_displayed"] is False
    business_doc = await database["businesses"].find_one({"_id": ObjectId(business_id)})
    assert business_doc["review_count"] == 2


@pytest.mark.asyncio
async def test_exact_attribution_tiers_use_identity_keys(database) -> None:
    await ensure_indexes(database)
    business_id = await _insert_business(database)
    await _insert_business(database, name="Closed Plumbing", place_id="place-9", active=False)
    service = ReviewImportService(database)

    assert await service.sync_business_identity_keys() == 2
    assert await service.sync_business_identity_keys() == 0
    stored = await database["businesses"].find_one({"_id": ObjectId(business_id)})
    assert stored["name_normalized"] == "joes plumbing"
    assert stored["phone_normalized"] == "5125550100"

    attributor = service.build_attributor()
    by_name_phone = await attributor.attribute(
        ReviewImportItem(**_item("g-1", place_id=None, business_phone="(512) 555-0100"))
    )
    by_id = await attributor.attribute(
        ReviewImportItem(**_item("g-2", place_id=None, business_name="", business_id=business_id))
    )

    assert (by_name_phone.business_id, by_name_phone.match_type, by_name_phone.confidence) == (
        business_id,
        "name_phone",
        95,
    )
    assert (by_id.business_id, by_id.match_type) == (business_id, "business_id")
    assert attributor.loaded_full_set is False

    inactive = await attributor.attribute(ReviewImportItem(**_item("g-3", place_id="place-9", business_name="")))
    fuzzy = await attributor.attribute(ReviewImportItem(**_item("g-4", place_id=None, business_name="Joe's Plumbin")))

    assert inactive is None
    assert (fuzzy.business_id, fuzzy.match_type, fuzzy.confidence) == (business_id, "fuzzy", 92)
    assert attributor.loaded_full_set is True
