from __future__ import annotations

import pytest

from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.db.memory import InMemoryLedgerStore
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.services.credit_service import CreditService


@pytest.fixture
def db():
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(db, tmp_path):
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def cache():
    return InMemoryAsyncCache()


@pytest.fixture
def service(db, ledger, cache):
    return CreditService(db=db, ledger=ledger, cache=cache)
