from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

from bizrank.models.business import PlanTier

RankingType = Literal["overall", "speed", "value", "quality", "reliability"]
Aspect = Literal["speed", "value", "quality", "reliability"]
CohortState = Literal["idle", "computing", "cached", "stale"]

RANKING_TYPES: tuple[str, ...] = ("overall", "speed", "value", "quality", "reliability")
ASPECTS: tuple[str, ...] = ("speed", "value", "quality", "reliability")


def build_cache_key(city: str, category_id: str, ranking_type: str) -> str:
    return f"{city}|{category_id}|{ranking_type}"


class BusinessScore(BaseModel):
    business_id: str
    name: str = ""
    plan_tier: PlanTier = "free"
    verified: bool = False
    performance_score: float = 0.0
    recency_multiplier: float = 1.0
    tier_bonus: float = 0.0
    final_score: float = 0.0
    confidence: int = 0
    component_scores: dict[str, int] = Field(default_factory=dict)
    weights: dict[str, float] = Field(default_factory=dict)
    review_count: int = 0
    performance_mention_rate: float = 0.0
    last_ranking_update: datetime | None = None
    tie_breaking_bonus: float = 0.0
    is_outlier: bool = False
    rank: int | None = None


class AspectScore(BaseModel):
    business_id: str
    name: str = ""
    plan_tier: PlanTier = "free"
    original_score: int = 0
    score: float = 0.0
    rank: int | None = None


class OutlierAdjustment(BaseModel):
    business_id: str
    name: str = ""
    original_score: float
    adjusted_score: float
    reason: Literal["unusually_high", "unusually_low"]


class RankingError(BaseModel):
    business_id: str
    name: str = ""
    error: str


class SkippedBusiness(BaseModel):
    business_id: str
    name: str = ""
    reason: str


class RankingStatistics(BaseModel):
    total_businesses: int = 0
    calculated: int = 0
    skipped: int = 0
    failed: int = 0
    outliers: int = 0
    average_score: float = 0.0
    average_confidence: int = 0


class RankingRun(BaseModel):
    city: str
    category_id: str
    ranking_type: RankingType = "overall"
    rankings: list[BusinessScore] = Field(default_factory=list)
    statistics: RankingStatistics = Field(default_factory=RankingStatistics)
    outliers: list[OutlierAdjustment] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)
    skipped: list[SkippedBusiness] = Field(default_factory=list)
    errors: list[RankingError] = Field(default_factory=list)
    message: str | None = None
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AspectRankingRun(BaseModel):
    city: str
    category_id: str
    aspect: Aspect
    rankings: list[AspectScore] = Field(default_factory=list)
    average_score: float = 0.0
    highest_score: float = 0.0
    lowest_score: float = 0.0
    errors: list[RankingError] = Field(default_factory=list)
    message: str | None = None
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RankedEntry(BaseModel):
    business_id: str
    rank: int
    score: float


class RankingCacheEntry(BaseModel):
    cache_key: str
    city: str
    category_id: str
    ranking_type: RankingType
    version: int = 0
    rankings: list[RankedEntry] = Field(default_factory=list)
    last_updated: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
