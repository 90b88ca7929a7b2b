# settings.py
from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # -----------------------
    # DB
    # -----------------------
    DATABASE_URL: str = ""
    SETTLEMENT_STORE: Literal["postgres", "memory"] = "postgres"

    # -----------------------
    # Payment processor (Mode Switch)
    # -----------------------
    PROCESSOR_MODE: Literal["mock", "stripe"] = "mock"
    PROCESSOR_HTTP_TIMEOUT_S: float = 20.0

    STRIPE_SECRET_KEY: str = ""
    STRIPE_API_BASE: str = "https://api.stripe.com"
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_S: int = 300

    # -----------------------
    # Settlement timing
    # -----------------------
    SETTLEMENT_DEFAULT_AGING_DAYS: float = Field(default=7, gt=0)
    SETTLEMENT_DEFAULT_COMPLAINT_WINDOW_HOURS: float = Field(default=24, gt=0)

    # -----------------------
    # Retries
    # -----------------------
    SETTLEMENT_MAX_RETRIES: int = Field(default=3, ge=0)
    SETTLEMENT_BACKOFF_BASE_SECONDS: int = Field(default=300, ge=1)
    SETTLEMENT_BACKOFF_MAX_SECONDS: int = Field(default=6 * 60 * 60, ge=1)
    RECONCILE_REQUERY_ATTEMPTS: int = Field(default=3, ge=1)
    RECONCILE_REQUERY_DELAY_SECONDS: float = Field(default=0.5, ge=0)

    # -----------------------
    # Sweep
    # -----------------------
    SWEEP_BATCH_SIZE: int = Field(default=100, ge=1)
    SWEEP_WORKERS: int = Field(default=4, ge=1)
    SWEEP_INTERVAL_SECONDS: int = Field(default=2 * 60 * 60, ge=1)
    SWEEP_ABORT_ON_OUTAGE: bool = False
    SWEEP_OUTAGE_THRESHOLD: int = Field(default=5, ge=1)

    ACCOUNT_CACHE_TTL_SECONDS: int = Field(default=300, ge=0)

    # -----------------------
    # Entry point keys
    # -----------------------
    CRON_API_KEY: str = ""
    ADMIN_API_KEY: str = ""
    INGEST_API_KEY: str = ""


settings = Settings()


def _is_strict_env() -> bool:
    return (settings.ENV or "").strip().lower() in {"staging", "prod", "production"}


def validate_env_settings() -> None:
    """
    Fail fast on missing secrets outside dev. Lists every missing key at once.
    """
    if not _is_strict_env():
        return

    missing: list[str] = []
    if not (settings.DATABASE_URL or "").strip() and settings.SETTLEMENT_STORE == "postgres":
        missing.append("DATABASE_URL")
    if settings.PROCESSOR_MODE == "stripe" and not (settings.STRIPE_SECRET_KEY or "").strip():
        missing.append("STRIPE_SECRET_KEY")
    if not (settings.STRIPE_WEBHOOK_SECRET or "").strip():
        missing.append("STRIPE_WEBHOOK_SECRET")
    if not (settings.CRON_API_KEY or "").strip():
        missing.append("CRON_API_KEY")
    if not (settings.ADMIN_API_KEY or "").strip():
        missing.append("ADMIN_API_KEY")
    if not (settings.INGEST_API_KEY or "").strip():
        missing.append("INGEST_API_KEY")

    if missing:
        raise RuntimeError("Missing required settings: " + ", ".join(missing))
