from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production", "test"] = "development"
    database_url: str = "sqlite+aiosqlite:///./rewards.db"

    # Internal API security
    admin_api_key: str = ""

    # Points ledger
    daily_points_retention_days: int = 7
    points_mutation_max_attempts: int = 3
    leaderboard_max_entries: int = 100
    login_action_type: str = "daily_login"
    streak_milestone_days: int = 100
    streak_milestone_points: int = 100
    review_milestone_count: int = 25
    review_milestone_points: int = 20
    helpful_votes_milestone_count: int = 100
    helpful_votes_milestone_points: int = 50

    # Referral lifecycle
    referral_code_length: int = 8
    referral_custom_code_min_length: int = 4
    referral_custom_code_max_length: int = 20
    referral_expiry_days: int = 30
    referral_signup_action: str = "referral_signup"
    referral_required_approved_reviews: int = 3
    referral_default_referrer_points: int = 50
    referral_default_referred_points: int = 25
    referral_sweep_batch_size: int = 500
    referral_reserved_codes: list[str] = Field(default_factory=list)

    @field_validator("referral_reserved_codes", mode="before")
    @classmethod
    def _parse_code_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().upper() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().upper() for item in value if str(item).strip()]
        return []

    # Ledger job scheduler
    job_scheduler_enabled: bool = False
    job_schedule_path: str = "config/schedules.toml"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
