from pydantic import BaseModel, Field

from bizrank.models.matching import ReviewMatchType


class BusinessMatchSummary(BaseModel):
    business_name: str
    match_type: ReviewMatchType
    confidence: int


class ImportResult(BaseModel):
    import_batch_id: str | None = None
    successful: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: list[str] = Field(default_factory=list)
    business_matches: list[BusinessMatchSummary] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.successful + self.failed + self.duplicates
