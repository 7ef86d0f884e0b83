"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("GT_ENV", "dev").lower()

# Legacy shared key (accepted in dev only)
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "test"}

# Recognised API scopes (also the caller roles)
API_SCOPES = {"user", "agent", "admin"}

SCHEDULER_ENABLED = os.getenv("GT_SCHEDULER_ENABLED", "0") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}


class Settings(BaseSettings):
    """Environment configuration for the GameTrust escrow backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///gametrust.db"
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    CORS_ALLOW_ORIGINS: list[str] = [
        "https://gametrust.gg",
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False
    DB_BUSY_TIMEOUT_SECONDS: float = 15.0
    DB_POOL_RECYCLE_SECONDS: int = 1800
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED
    LOG_LEVEL: str = "INFO"

    # --- Escrow lifecycle ------------------------------------------------
    CURRENCY: str = "usd"
    AUTO_CONFIRM_HOURS: int = 48
    DISPUTE_WINDOW_HOURS: int = 48
    DISPUTE_SLA_HOURS: int = 72
    DISPUTE_SENIOR_QUEUE: str = "senior-review"
    DISPUTE_MAX_EVIDENCE: int = 10

    # --- Payment gateway -------------------------------------------------
    PAYMENT_PROVIDER: str = "sandbox"
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: int = 20
    PAYMENT_RETRY_BASE_SECONDS: float = 1.0
    PAYMENT_RETRY_MAX_SECONDS: float = 60.0
    PAYMENT_RETRY_MAX_ATTEMPTS: int = 6
    STRIPE_SECRET_KEY: str | None = None

    # --- Background jobs -------------------------------------------------
    TIMER_SWEEP_SECONDS: int = 60
    SETTLEMENT_RESUME_MINUTES: int = 5

    # --- Notifications ---------------------------------------------------
    NOTIFICATION_WEBHOOK_URL: str | None = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("PAYMENT_PROVIDER")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if cleaned not in {"sandbox", "stripe"}:
            raise ValueError("PAYMENT_PROVIDER must be 'sandbox' or 'stripe'")
        return cleaned

    @field_validator("NOTIFICATION_WEBHOOK_URL", "STRIPE_SECRET_KEY", "SENTRY_DSN")
    @classmethod
    def _strip_empty(cls, value: str | None) -> str | None:
        """Normalise empty strings to ``None``."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class AppInfo(BaseModel):
    name: str = "gametrust-escrow"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "API_SCOPES",
    "SCHEDULER_ENABLED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
