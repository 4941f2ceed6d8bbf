from __future__ import annotations

import logging

from .cache.memory import InMemoryAsyncCache
from .config import CreditLedgerSettings, settings
from .db.base import BaseLedgerStore
from .db.memory import InMemoryLedgerStore
from .logging.ledger_logger import LedgerLogger
from .services.credit_service import CreditService


logger = logging.getLogger(__name__)


def create_ledger_store(config: CreditLedgerSettings | None = None) -> BaseLedgerStore:
    config = config or settings
    if config.mongo_uri:
        # motor is only imported when a Mongo URI is configured
        from .db.mongo import MongoLedgerStore

        logger.info("Using MongoDB ledger store (database %s)", config.mongo_db)
        return MongoLedgerStore.from_client_uri(config.mongo_uri, config.mongo_db)
    logger.warning("CREDIT_MONGO_URI not set; using the in-memory ledger store")
    return InMemoryLedgerStore()


def create_credit_service(
    config: CreditLedgerSettings | None = None,
    db: BaseLedgerStore | None = None,
) -> CreditService:
    config = config or settings
    db = db or create_ledger_store(config)
    ledger = LedgerLogger(db=db, file_path=config.ledger_log_path)
    # Process-local cache only for the single-process in-memory store
    cache = None if config.mongo_uri else InMemoryAsyncCache()
    return CreditService(
        db=db,
        ledger=ledger,
        cache=cache,
        balance_cache_ttl_seconds=config.balance_cache_ttl_seconds,
        usage_history_limit=config.usage_history_limit,
    )
