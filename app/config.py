# app/config.py

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from BILLING_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite:///db.sqlite"  # file in project root
    SQLITE_BUSY_TIMEOUT: float = 30.0  # seconds a writer waits on a locked db

    # Ledger write retries (optimistic version conflicts, lock timeouts)
    LEDGER_MAX_ATTEMPTS: int = 5
    LEDGER_RETRY_BACKOFF: float = 0.02  # seconds, scaled by attempt number

    # Billing defaults
    TIMEZONE: str = "America/New_York"
    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_PAYMENT_TERMS_DAYS: int = 30

    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
