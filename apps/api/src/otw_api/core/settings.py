import json
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_VENUE_DAILY_LIMITS: dict[str, int | None] = {
    "free": 1,
    "basic": 5,
    "premium": None,
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production", "test"] = "development"
    database_url: str = "sqlite+aiosqlite:///./otw.db"
    database_echo: bool = False
    log_level: str = "INFO"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "otw-default"
    flash_offer_task_queue: str = "flash-offers"

    # Internal API security
    dispatch_api_key: str = ""

    # Flash offer claims
    flash_offer_claim_ttl_hours: int = 24
    flash_offer_checkin_window_hours: int = 12
    flash_offer_token_length: int = 6
    flash_offer_token_max_attempts: int = 5
    flash_offer_max_claim_value: Decimal = Decimal("500.00")

    # Flash offer notification rate limits
    # rate-limit: tier quotas keyed by venue subscription tier, None means unbounded
    flash_offer_venue_daily_limits: Annotated[dict[str, int | None], NoDecode] = Field(
        default_factory=lambda: dict(DEFAULT_VENUE_DAILY_LIMITS)
    )
    flash_offer_user_daily_limit: int = 10
    flash_offer_rate_limit_backend: Literal["database", "redis"] = "database"
    flash_offer_rate_limit_timezone: str = "UTC"

    @field_validator("flash_offer_venue_daily_limits", mode="before")
    @classmethod
    def _parse_tier_limits(cls, value: object) -> dict[str, int | None]:
        if value is None:
            return dict(DEFAULT_VENUE_DAILY_LIMITS)
        if isinstance(value, str) and value.strip().startswith("{"):
            value = json.loads(value)
        if isinstance(value, str):
            limits: dict[str, int | None] = {}
            for pair in value.split(","):
                if "=" not in pair:
                    continue
                tier, raw_limit = pair.split("=", 1)
                tier = tier.strip().lower()
                raw_limit = raw_limit.strip()
                if not tier:
                    continue
                limits[tier] = int(raw_limit) if raw_limit and raw_limit.lower() != "none" else None
            return limits
        if isinstance(value, dict):
            return {str(key).lower(): item for key, item in value.items()}
        return dict(DEFAULT_VENUE_DAILY_LIMITS)

    # Flash offer dispatch
    flash_offer_dispatch_batch_size: int = 500
    flash_offer_dispatch_concurrency: int = 4
    flash_offer_dispatch_timeout_seconds: float = 25.0
    flash_offer_selection_page_size: int = 500
    push_provider: Literal["memory", "fcm"] = "memory"
    fcm_project_id: str | None = None
    fcm_access_token: str | None = None
    fcm_base_url: str = "https://fcm.googleapis.com"
    fcm_timeout_seconds: float = 10.0
    fcm_max_concurrent_requests: int = 50

    # Flash offer lifecycle sweeps
    flash_offer_lifecycle_worker_enabled: bool = False
    flash_offer_lifecycle_interval_seconds: int = 60

    # Claim client defaults
    claim_client_timeout_seconds: float = 10.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
