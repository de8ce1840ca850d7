from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

ClaimStatus = Literal["pending", "needs_info", "approved", "rejected"]
VerificationMethod = Literal["documents", "gmb_oauth", "pending"]


class LocationAddress(BaseModel):
    address_lines: list[str] = Field(default_factory=list)
    locality: str | None = None
    administrative_area: str | None = None
    postal_code: str | None = None
    region_code: str | None = None


class ExternalLocation(BaseModel):
    name: str = ""
    location_name: str | None = None
    primary_phone: str | None = None
    address: LocationAddress | None = None
    place_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.location_name or self.name


class VerificationDetails(BaseModel):
    name_match: int = Field(default=0, ge=0, le=100)
    address_match: int = Field(default=0, ge=0, le=100)
    phone_match: bool = False


class GmbVerification(BaseModel):
    google_account_email: str = ""
    gmb_location_id: str = ""
    matched_business_name: str = ""
    match_confidence: int = Field(default=0, ge=0, le=100)
    requires_manual_review: bool = False
    verification_details: VerificationDetails = Field(default_factory=VerificationDetails)
    failure_reason: str | None = None
    verified_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AdminNote(BaseModel):
    admin: str
    note: str
    action: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Claim(BaseModel):
    id: str | None = None
    business_id: str
    user_id: str
    status: ClaimStatus = "pending"
    verification_method: VerificationMethod = "pending"
    user_role: str = ""
    contact_info: dict[str, Any] = Field(default_factory=dict)
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    admin_notes: list[AdminNote] = Field(default_factory=list)
    gmb_verification: GmbVerification | None = None
