from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class CreditLedgerSettings(BaseSettings):
    """
    Runtime configuration, read from `CREDIT_*` environment variables
    (and a local `.env` file when present).

    Without `CREDIT_MONGO_URI` the ledger runs on the in-memory store.
    """

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_", env_file=".env", extra="ignore"
    )

    mongo_uri: Optional[str] = None
    mongo_db: str = "credit_ledger"
    ledger_log_path: Path = Path("logs/credit_ledger.log")
    balance_cache_ttl_seconds: int = 300
    usage_history_limit: int = 50
    log_level: str = "INFO"


settings = CreditLedgerSettings()


def configure_logging(config: CreditLedgerSettings | None = None) -> None:
    config = config or settings
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
