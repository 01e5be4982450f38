"""Configuration for the billing service.

All values are read from environment variables (or a `.env` file) with the
`ISPBILL_` prefix, e.g. `ISPBILL_DATABASE_URL`.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.cron import CronExpression


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="ISPBILL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )

    # Service settings
    service_name: str = "ispbill-billing"
    host: str = "0.0.0.0"
    port: int = 8090
    debug: bool = False
    log_level: str = "info"
    log_format: str = Field(default="json", description="json or pretty")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./ispbill.db",
        description="SQLAlchemy async connection URL",
    )
    database_echo: bool = False

    # API
    api_prefix: str = "/api"

    # Billing cycle
    billing_timezone: str = "Europe/Moscow"
    monthly_cron: str = "0 0 1 * *"
    hourly_cron: str = "0 * * * *"
    scheduler_enabled: bool = True
    scheduler_startup_delay_seconds: float = 60.0
    batch_concurrency: int = Field(default=16, ge=1)
    boundary_timeout_seconds: float = Field(default=5.0, gt=0)
    notification_threshold: Decimal = Decimal("100")
    max_hourly_catchup_hours: int = Field(default=24, ge=1)

    # Boundary collaborators; outbox tables are used when unset
    command_gateway_url: Optional[str] = None
    notification_gateway_url: Optional[str] = None

    @field_validator("billing_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names at startup."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("monthly_cron", "hourly_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        CronExpression(v)
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "pretty"):
            raise ValueError("log_format must be 'json' or 'pretty'")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod", "staging")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()
