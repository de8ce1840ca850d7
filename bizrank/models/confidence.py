from datetime import datetime, timezone

from pydantic import BaseModel, Field


class ConfidenceBreakdown(BaseModel):
    review_count: int = 0
    verification: int = 0
    performance_mentions: int = 0
    sentiment_consistency: int = 0
    recency: int = 0


class ConfidenceFactors(BaseModel):
    total_reviews: int = 0
    analyzed_reviews: int = 0
    verified_reviews: int = 0
    performance_mention_reviews: int = 0
    gmb_reviews: int = 0
    recent_reviews: int = 0


class ConfidenceReport(BaseModel):
    business_id: str | None = None
    overall_confidence: int = Field(default=0, ge=0, le=100)
    breakdown: ConfidenceBreakdown = Field(default_factory=ConfidenceBreakdown)
    factors: ConfidenceFactors = Field(default_factory=ConfidenceFactors)
    weights: dict[str, float] = Field(default_factory=dict)
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
