from __future__ import annotations

from collections.abc import Iterable

from bizrank.models.business import Business
from bizrank.models.claim import ExternalLocation, VerificationDetails
from bizrank.models.matching import BusinessMatch, LocationMatchResult
from bizrank.models.review import ReviewImportItem
from bizrank.pipeline.similarity import (
    address_similarity,
    digits_only,
    normalize_business_name,
    normalize_text,
    phone_match,
    round_half_up,
    string_similarity,
)
from bizrank.pipeline.weights import MatchingConfig


def identity_keys(name: str | None, phone: str | None) -> dict[str, str | None]:
    return {"name_normalized": normalize_business_name(name), "phone_normalized": digits_only(phone) or None}


class IdentityMatcher:
    def __init__(self, config: MatchingConfig | None = None) -> None:
        self.config = config or MatchingConfig()

    def score_location(
        self,
        *,
        name: str | None,
        address: str | None,
        phone: str | None,
        location: ExternalLocation,
    ) -> tuple[int, VerificationDetails]:
        details = VerificationDetails(
            name_match=string_similarity(name, location.display_name),
            address_match=address_similarity(address, location.address),
            phone_match=phone_match(phone, location.primary_phone),
        )
        confidence = round_half_up(
            self.config.name_weight * details.name_match
            + self.config.address_weight * details.address_match
            + self.config.phone_weight * (100 if details.phone_match else 0)
        )
        return min(max(confidence, 0), 100), details

    def match_location(
        self,
        *,
        name: str | None,
        address: str | None,
        phone: str | None,
        locations: Iterable[ExternalLocation],
    ) -> LocationMatchResult:
        candidates = list(locations)
        if not candidates:
            return LocationMatchResult(
                classification="rejected",
                confidence=0,
                requires_manual_review=False,
                failure_reason="no candidates available",
            )

        best_location: ExternalLocation | None = None
        best_confidence = -1
        best_details = VerificationDetails()
        for location in candidates:
            confidence, details = self.score_location(name=name, address=address, phone=phone, location=location)
            # strict comparison keeps the first-seen candidate on ties
            if confidence > best_confidence:
                best_location = location
                best_confidence = confidence
                best_details = details

        return LocationMatchResult(
            classification=self.classify(best_confidence),
            confidence=best_confidence,
            requires_manual_review=self.config.manual_review_threshold
            <= best_confidence
            < self.config.auto_verify_threshold,
            details=best_details,
            matched_location=best_location,
            failure_reason=self._failure_reason(best_confidence),
            candidates_evaluated=len(candidates),
        )

    def match_business(self, business: Business, locations: Iterable[ExternalLocation]) -> LocationMatchResult:
        return self.match_location(
            name=business.name,
            address=business.address,
            phone=business.phone,
            locations=locations,
        )

    def classify(self, confidence: int) -> str:
        if confidence >= self.config.auto_verify_threshold:
            return "auto_verified"
        if confidence >= self.config.manual_review_threshold:
            return "manual_review"
        return "rejected"

    def _failure_reason(self, confidence: int) -> str | None:
        if confidence >= self.config.manual_review_threshold:
            return None
        return (
            f"Low confidence match ({confidence}%). "
            "Business details don't closely match any listed locations."
        )


class ReviewAttributor:
    def __init__(self, businesses: Iterable[Business], config: MatchingConfig | None = None) -> None:
        self.config = config or MatchingConfig()
        self._businesses: list[Business] = [item for item in businesses if item.id]
        self._by_place_id: dict[str, Business] = {}
        self._by_id: dict[str, Business] = {}
        self._by_name_phone: dict[tuple[str, str], Business] = {}
        self._normalized_names: list[tuple[Business, str]] = []
        self._normalized_addresses: list[tuple[Business, str]] = []

        for business in self._businesses:
            self._by_id.setdefault(str(business.id), business)
            if business.place_id:
                self._by_place_id.setdefault(business.place_id, business)
            name_key = normalize_business_name(business.name)
            phone_key = digits_only(business.phone)
            if name_key and phone_key:
                self._by_name_phone.setdefault((name_key, phone_key), business)
            self._normalized_names.append((business, name_key))
            self._normalized_addresses.append((business, normalize_text(business.address)))

    def __len__(self) -> int:
        return len(self._businesses)

    def get(self, business_id: str) -> Business | None:
        return self._by_id.get(business_id)

    def attribute(self, item: ReviewImportItem) -> BusinessMatch | None:
        if item.place_id:
            business = self._by_place_id.get(item.place_id)
            if business is not None:
                return self._match(business, self.config.place_id_confidence, "place_id")

        if item.business_id:
            business = self._by_id.get(item.business_id)
            if business is not None:
                return self._match(business, self.config.business_id_confidence, "business_id")

        name_key = normalize_business_name(item.business_name)
        phone_key = digits_only(item.business_phone)
        if name_key and phone_key:
            business = self._by_name_phone.get((name_key, phone_key))
            if business is not None:
                return self._match(business, self.config.name_phone_confidence, "name_phone")

        return self.attribute_by_similarity(item)

    def attribute_by_similarity(self, item: ReviewImportItem) -> BusinessMatch | None:
        fuzzy = self._best_fuzzy_match(normalize_business_name(item.business_name))
        if fuzzy is not None:
            return fuzzy
        return self._address_match(item.business_address)

    def _best_fuzzy_match(self, name_key: str) -> BusinessMatch | None:
        if not name_key:
            return None

        best: Business | None = None
        best_similarity = 0
        for business, candidate_key in self._normalized_names:
            similarity = string_similarity(candidate_key, name_key)
            if similarity > best_similarity:
                best = business
                best_similarity = similarity

        if best is None or best_similarity <= self.config.fuzzy_name_threshold:
            return None
        return self._match(best, best_similarity, "fuzzy")

    def _address_match(self, address: str | None) -> BusinessMatch | None:
        needle = normalize_text(address)
        if not needle:
            return None
        for business, candidate in self._normalized_addresses:
            if candidate and (needle in candidate or candidate in needle):
                return self._match(business, self.config.address_confidence, "address")
        return None

    def _match(self, business: Business, confidence: int, match_type: str) -> BusinessMatch:
        return BusinessMatch(business_id=str(business.id), confidence=confidence, match_type=match_type)
