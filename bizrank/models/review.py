from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

ReviewSource = Literal["gmb_api", "yelp_import", "facebook_import", "manual", "direct"]
SentimentClass = Literal["positive", "neutral", "negative"]


class ReviewSentiment(BaseModel):
    classification: SentimentClass
    score: float | None = None


class MentionFlags(BaseModel):
    speed: bool = False
    value: bool = False
    quality: bool = False
    reliability: bool = False

    def count(self) -> int:
        return sum((self.speed, self.value, self.quality, self.reliability))


class Review(BaseModel):
    id: str | None = None
    business_id: str
    review_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    user_name: str = ""
    source: ReviewSource = "direct"
    verified: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    imported_at: datetime | None = None
    sentiment: ReviewSentiment | None = None
    mentions: MentionFlags = Field(default_factory=MentionFlags)
    import_batch_id: str | None = None
    flagged: bool = False
    is_displayed: bool = True

    @property
    def analyzed(self) -> bool:
        return self.sentiment is not None

    @property
    def has_performance_mention(self) -> bool:
        return self.mentions.count() > 0


class ReviewImportItem(BaseModel):
    review_id: str
    rating: float
    comment: str = ""
    user_name: str = ""
    business_name: str = ""
    business_phone: str | None = None
    business_address: str | None = None
    business_id: str | None = None
    place_id: str | None = None
    verified: bool = False
    original_create_time: datetime | None = None
