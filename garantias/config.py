"""Settings loaded from the environment (prefix GARANTIAS_)."""
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = Field(default="bob-garantias", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")

    # Business rules
    guarantee_percentage: Decimal = Field(default=Decimal("0.08"), description="Guarantee share of the winning offer")
    penalty_percentage: Decimal = Field(default=Decimal("0.30"), description="Penalty share of the validated guarantee")
    currency: str = Field(default="USD", description="Ledger currency")
    upcoming_expiration_hours: int = Field(default=2, description="Warning window before a payment deadline")

    # Notifications
    notifications_async: bool = Field(default=True, description="Dispatch notifications on a worker pool")
    notification_workers: int = Field(default=2, description="Notification worker pool size")

    allowed_origins: str = Field(
        default="http://localhost:5174",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_prefix="GARANTIAS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
