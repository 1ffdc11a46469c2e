import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # External ledger (Airtable-style tabular store)
    EXTERNAL_LEDGER_API_KEY: Optional[str] = None
    EXTERNAL_LEDGER_API_URL: str = "https://api.airtable.com/v0"
    EXTERNAL_LEDGER_BASE_ID: str = ""
    EXTERNAL_LEDGER_TABLE_ID: str = ""
    EXTERNAL_LEDGER_BATCH_SIZE: int = 10  # API limit per write request
    EXTERNAL_LEDGER_PAGE_SIZE: int = 100
    EXTERNAL_LEDGER_RATE_LIMIT_SECONDS: float = 0.22  # stay under 5 req/sec
    EXTERNAL_LEDGER_TIMEOUT_SECONDS: float = 30.0
    EXTERNAL_LEDGER_FILTER_CHUNK_SIZE: int = 50  # payout ids per filterByFormula

    # Local store
    STORE_MAX_PAGE_SIZE: int = 1000

    # Partner lookup cache
    PARTNER_CACHE_TTL_SECONDS: float = 300.0
    PARTNER_CACHE_CAPACITY: int = 1024

    # Feature flags
    FEATURE_WRITE_PARTNER_ID: bool = False
    FEATURE_VALIDATE_STATUS: bool = True
    SYNC_IMMEDIATELY: bool = True

    # App
    APP_NAME: str = "Residual Payouts API"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def external_ledger_configured(self) -> bool:
        return bool(self.EXTERNAL_LEDGER_API_KEY and self.EXTERNAL_LEDGER_TABLE_ID)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
