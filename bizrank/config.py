from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Business Rankings Core"
    app_env: str = "dev"
    log_level: str = "INFO"

    mongo_uri: str = "mongodb://localhost:27017"
    db_name: str = "business_rankings"

    ranking_cache_ttl_days: int = 7
    ranking_aspects: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["speed", "value", "quality", "reliability"]
    )
    confidence_batch_limit: int = 50
    import_batch_size_limit: int = 1000
    worker_poll_seconds: int = 5
    ranking_job_lease_minutes: int = 30
    ranking_refresh_interval_hours: int = 24
    ranking_refresh_activity_hours: int = 24

    @field_validator("ranking_aspects", mode="before")
    @classmethod
    def parse_ranking_aspects(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
