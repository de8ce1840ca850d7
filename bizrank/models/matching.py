from typing import Literal

from pydantic import BaseModel, Field

from bizrank.models.claim import ExternalLocation, VerificationDetails

MatchClassification = Literal["auto_verified", "manual_review", "rejected"]
ReviewMatchType = Literal["place_id", "business_id", "name_phone", "fuzzy", "address"]


class LocationMatchResult(BaseModel):
    classification: MatchClassification
    confidence: int = Field(ge=0, le=100)
    requires_manual_review: bool = False
    details: VerificationDetails = Field(default_factory=VerificationDetails)
    matched_location: ExternalLocation | None = None
    failure_reason: str | None = None
    candidates_evaluated: int = 0

    @property
    def verified(self) -> bool:
        return self.classification == "auto_verified"


class BusinessMatch(BaseModel):
    business_id: str
    confidence: int = Field(ge=0, le=100)
    match_type: ReviewMatchType
