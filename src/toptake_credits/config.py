from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CatalogItemSettings(BaseModel):
    credit_type: str
    amount: int = Field(gt=0)
    validity_days: Optional[int] = Field(default=None, gt=0)


class CreditSettings(BaseSettings):
    """
    Process configuration, read from TOPTAKE_CREDITS_* environment variables
    or a local .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="TOPTAKE_CREDITS_",
        env_file=".env",
        extra="ignore",
    )

    mongo_uri: Optional[str] = None
    mongo_db: str = "toptake_credits"
    ledger_log_path: Path = Path("logs/credit_ledger.log")
    log_level: str = "INFO"

    balance_cache_ttl_seconds: int = 300
    balance_cache_max_entries: int = 10_000
    default_history_limit: int = 50
    max_history_limit: int = 200

    # Admin grant endpoint is disabled when unset
    admin_token: Optional[str] = None

    # Overrides the built-in price id table; JSON object in the environment
    price_catalog: Optional[Dict[str, CatalogItemSettings]] = None


@lru_cache
def get_settings() -> CreditSettings:
    return CreditSettings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("pymongo").setLevel(logging.WARNING)
