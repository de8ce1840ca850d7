from pydantic import BaseModel, ConfigDict, Field, model_validator

_EQUAL_WEIGHTS = {"speed": 0.25, "value": 0.25, "quality": 0.25, "reliability": 0.25}

DEFAULT_CATEGORY_WEIGHTS: dict[str, dict[str, float]] = {
    "hvac": {"speed": 0.4, "quality": 0.35, "value": 0.15, "reliability": 0.3},
    "plumbing": {"speed": 0.5, "reliability": 0.3, "value": 0.1, "quality": 0.25},
    "landscaping": {"quality": 0.45, "value": 0.3, "reliability": 0.15, "speed": 0.2},
    "cleaning": {"quality": 0.4, "reliability": 0.35, "value": 0.15, "speed": 0.2},
    "electrical": {"speed": 0.4, "quality": 0.35, "reliability": 0.3, "value": 0.15},
    "roofing": {"quality": 0.5, "reliability": 0.3, "value": 0.2, "speed": 0.1},
    "painting": {"quality": 0.45, "value": 0.25, "reliability": 0.2, "speed": 0.1},
    "pest-control": {"speed": 0.4, "reliability": 0.35, "value": 0.15, "quality": 0.25},
    "auto-repair": {"speed": 0.35, "quality": 0.3, "reliability": 0.25, "value": 0.2},
    "home-improvement": {"quality": 0.4, "value": 0.3, "reliability": 0.2, "speed": 0.15},
}

DEFAULT_TIER_BONUSES: dict[str, float] = {"free": 0.0, "starter": 0.02, "pro": 0.03, "power": 0.05}

# (max age in days, multiplier); reviews older than the last bucket get the floor
DEFAULT_RECENCY_BUCKETS: tuple[tuple[int, float], ...] = ((30, 1.0), (90, 0.85), (180, 0.7), (365, 0.5))


class MatchingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name_weight: float = 0.5
    address_weight: float = 0.35
    phone_weight: float = 0.15
    auto_verify_threshold: int = 85
    manual_review_threshold: int = 60

    fuzzy_name_threshold: int = 85
    place_id_confidence: int = 100
    business_id_confidence: int = 100
    name_phone_confidence: int = 95
    address_confidence: int = 80

    duplicate_comment_threshold: int = 90

    @model_validator(mode="after")
    def check_thresholds(self) -> "MatchingConfig":
        if self.manual_review_threshold > self.auto_verify_threshold:
            raise ValueError("manual_review_threshold must not exceed auto_verify_threshold.")
        return self


class ConfidenceWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    review_count: float = 0.30
    verification: float = 0.20
    performance_mentions: float = 0.25
    sentiment_consistency: float = 0.15
    recency: float = 0.10

    full_volume_reviews: int = 50
    recent_days: int = 30
    moderate_days: int = 90

    @model_validator(mode="after")
    def check_sum(self) -> "ConfidenceWeights":
        total = (
            self.review_count
            + self.verification
            + self.performance_mentions
            + self.sentiment_consistency
            + self.recency
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Confidence weights must sum to 1.0, got {total:.4f}.")
        return self

    def as_dict(self) -> dict[str, float]:
        return {
            "review_count": self.review_count,
            "verification": self.verification,
            "performance_mentions": self.performance_mentions,
            "sentiment_consistency": self.sentiment_consistency,
            "recency": self.recency,
        }


class RankingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_weights: dict[str, dict[str, float]] = Field(default_factory=lambda: dict(DEFAULT_CATEGORY_WEIGHTS))
    tier_bonuses: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_TIER_BONUSES))
    recency_buckets: tuple[tuple[int, float], ...] = DEFAULT_RECENCY_BUCKETS
    recency_floor: float = 0.3

    outlier_min_cohort: int = 3
    outlier_iqr_factor: float = 1.5
    outlier_pull_back: float = 0.3

    tie_window: float = 0.1
    tie_bonus_reviews_20: float = 0.02
    tie_bonus_reviews_50: float = 0.02
    tie_bonus_verified: float = 0.02
    tie_bonus_recent_update: float = 0.01
    tie_bonus_mention_rate: float = 0.02
    recent_update_days: int = 7

    @model_validator(mode="after")
    def check_tier_bonuses(self) -> "RankingConfig":
        for tier, bonus in self.tier_bonuses.items():
            if not 0.0 <= bonus <= 0.05:
                raise ValueError(f"Tier bonus for '{tier}' must stay within [0, 0.05].")
        return self

    def weights_for(self, category_id: str | None) -> dict[str, float]:
        key = (category_id or "").strip().lower()
        return dict(self.category_weights.get(key, _EQUAL_WEIGHTS))

    def tier_bonus(self, plan_tier: str | None) -> float:
        return float(self.tier_bonuses.get(plan_tier or "free", 0.0))
