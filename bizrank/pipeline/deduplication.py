from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, Field

from bizrank.models.review import Review
from bizrank.pipeline.similarity import normalize_text, string_similarity

SOURCE_AUTHORITY: dict[str, int] = {
    "gmb_api": 10,
    "facebook_import": 5,
    "yelp_import": 5,
    "direct": 3,
    "manual": 1,
}

DUPLICATE_PAIR_THRESHOLD = 0.7


class DuplicateCheck(BaseModel):
    is_duplicate: bool
    reason: str | None = None
    existing_review_id: str | None = None


class DuplicatePair(BaseModel):
    primary: Review
    duplicate: Review
    confidence: float
    reasons: list[str] = Field(default_factory=list)


class DuplicateResolution(BaseModel):
    keep: Review
    remove: Review
    reason: str


class ReviewDeduplicator:
    def __init__(self, known_review_ids: Iterable[str] = (), comment_threshold: int = 90) -> None:
        self._known_ids: set[str] = set(known_review_ids)
        self._by_business: dict[str, list[Review]] = {}
        self.comment_threshold = comment_threshold

    def has_business(self, business_id: str) -> bool:
        return business_id in self._by_business

    def load_business_reviews(self, business_id: str, reviews: Iterable[Review]) -> None:
        items = list(reviews)
        self._by_business[business_id] = items
        self._known_ids.update(item.review_id for item in items)

    def mark_known(self, review_id: str) -> None:
        self._known_ids.add(review_id)

    def is_known_id(self, review_id: str) -> bool:
        return review_id in self._known_ids

    def find_similar(self, business_id: str, user_name: str, comment: str) -> Review | None:
        author = (user_name or "").lower()
        text = (comment or "").lower()
        for existing in self._by_business.get(business_id, []):
            if existing.user_name.lower() != author:
                continue
            if string_similarity(existing.comment.lower(), text) > self.comment_threshold:
                return existing
        return None

    def check(self, *, review_id: str, business_id: str, user_name: str, comment: str) -> DuplicateCheck:
        if self.is_known_id(review_id):
            return DuplicateCheck(is_duplicate=True, reason="exact_id", existing_review_id=review_id)

        similar = self.find_similar(business_id, user_name, comment)
        if similar is not None:
            return DuplicateCheck(is_duplicate=True, reason="similar_content", existing_review_id=similar.review_id)

        return DuplicateCheck(is_duplicate=False)

    def register(self, review: Review) -> None:
        self._known_ids.add(review.review_id)
        self._by_business.setdefault(review.business_id, []).append(review)


def score_duplicate_pair(first: Review, second: Review) -> tuple[float, list[str]]:
    if first.review_id == second.review_id and first.source == second.source:
        return 1.0, ["Same review ID from same source"]

    confidence = 0.0
    reasons: list[str] = []

    if first.user_name == second.user_name and first.rating == second.rating:
        confidence += 0.3
        reasons.append("Same author and rating")

    content_similarity = string_similarity(
        normalize_text(first.comment),
        normalize_text(second.comment),
    )
    if content_similarity > 90:
        confidence += 0.5
        reasons.append(f"Very similar content ({content_similarity}% match)")
    elif content_similarity > 80:
        confidence += 0.3
        reasons.append(f"Similar content ({content_similarity}% match)")

    days_apart = abs((first.created_at - second.created_at).total_seconds()) / 86400
    if days_apart <= 1:
        confidence += 0.2
        reasons.append("Posted within 1 day")
    elif days_apart <= 7:
        confidence += 0.1
        reasons.append("Posted within 1 week")

    return round(confidence, 2), reasons


def find_duplicate_pairs(reviews: list[Review]) -> list[DuplicatePair]:
    pairs: list[DuplicatePair] = []
    for index, primary in enumerate(reviews):
        for candidate in reviews[index + 1 :]:
            confidence, reasons = score_duplicate_pair(primary, candidate)
            if confidence >= DUPLICATE_PAIR_THRESHOLD:
                pairs.append(
                    DuplicatePair(primary=primary, duplicate=candidate, confidence=confidence, reasons=reasons)
                )
    return pairs


def resolve_duplicate_pair(primary: Review, duplicate: Review) -> DuplicateResolution:
    primary_authority = SOURCE_AUTHORITY.get(primary.source, 0)
    duplicate_authority = SOURCE_AUTHORITY.get(duplicate.source, 0)

    if primary_authority > duplicate_authority:
        return DuplicateResolution(
            keep=primary,
            remove=duplicate,
            reason=f"Keeping {primary.source} over {duplicate.source} (higher authority)",
        )
    if duplicate_authority > primary_authority:
        return DuplicateResolution(
            keep=duplicate,
            remove=primary,
            reason=f"Keeping {duplicate.source} over {primary.source} (higher authority)",
        )
    if primary.created_at > duplicate.created_at:
        return DuplicateResolution(keep=primary, remove=duplicate, reason="Keeping more recent review")
    return DuplicateResolution(keep=duplicate, remove=primary, reason="Keeping more recent review")
