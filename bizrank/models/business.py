from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, model_validator

PlanTier = Literal["free", "starter", "pro", "power"]

PLAN_TIER_ORDER: dict[str, int] = {"free": 0, "starter": 1, "pro": 2, "power": 3}


class Business(BaseModel):
    id: str | None = None
    name: str
    name_normalized: str = ""
    address: str = ""
    phone: str | None = None
    phone_normalized: str | None = None
    city: str = ""
    category_id: str = ""
    place_id: str | None = None
    plan_tier: PlanTier = "free"
    active: bool = True
    verified: bool = False
    claimed: bool = False
    claimed_by_user_id: str | None = None
    claimed_at: datetime | None = None

    speed_score: int | None = Field(default=None, ge=0, le=100)
    value_score: int | None = Field(default=None, ge=0, le=100)
    quality_score: int | None = Field(default=None, ge=0, le=100)
    reliability_score: int | None = Field(default=None, ge=0, le=100)

    city_ranking: int | None = None
    category_ranking: int | None = None
    aspect_rankings: dict[str, int] = Field(default_factory=dict)
    last_ranking_update: datetime | None = None
    confidence_score: int | None = Field(default=None, ge=0, le=100)

    review_count: int = Field(default=0, ge=0)
    rating: float | None = Field(default=None, ge=0.0, le=5.0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_claim_owner(self) -> "Business":
        if self.claimed and not self.claimed_by_user_id:
            raise ValueError("A claimed business must reference its claim owner.")
        return self

    def performance_scores(self) -> dict[str, int]:
        return {
            "speed": self.speed_score or 0,
            "value": self.value_score or 0,
            "quality": self.quality_score or 0,
            "reliability": self.reliability_score or 0,
        }
