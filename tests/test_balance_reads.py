from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from credit_ledger.bootstrap import create_credit_service
from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.config import CreditLedgerSettings
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.services.credit_service import CreditService


GRANTED_AT = datetime(2025, 1, 15, tzinfo=timezone.utc)


class SharedCache(InMemoryAsyncCache):
    shared = True


@pytest.mark.asyncio
async def test_balance_sees_writes_from_another_service(db, tmp_path):
    # An API worker and the expiry job, each with its own process-local cache
    api = CreditService(
        db=db,
        ledger=LedgerLogger(db=db, file_path=tmp_path / "api.log"),
        cache=InMemoryAsyncCache(),
    )
    cron = CreditService(
        db=db,
        ledger=LedgerLogger(db=db, file_path=tmp_path / "cron.log"),
        cache=InMemoryAsyncCache(),
    )
    await api.register_user("user-1")
    await api.grant("user-1", 50, "monthly", now=GRANTED_AT)
    assert await api.get_balance("user-1") == 50

    summary = await cron.expire_stale_grants(GRANTED_AT + timedelta(days=40))
    assert summary.credits_forfeited == 50

    assert await api.get_balance("user-1") == 0


@pytest.mark.asyncio
async def test_shared_cache_serves_the_projection(db, ledger):
    service = CreditService(db=db, ledger=ledger, cache=SharedCache())
    await service.register_user("user-1")
    await service.grant("user-1", 20, "purchased")
    # Out-of-band write the shared projection has not seen
    await db.set_user_balance("user-1", 7)

    assert await service.get_balance("user-1") == 20


def test_mongo_backed_service_has_no_local_cache(db, tmp_path):
    config = CreditLedgerSettings(
        mongo_uri="mongodb://localhost:27017",
        ledger_log_path=tmp_path / "ledger.log",
    )
    assert create_credit_service(config, db=db)._balances is None

    local = CreditLedgerSettings(mongo_uri=None, ledger_log_path=tmp_path / "ledger.log")
    assert create_credit_service(local, db=db)._balances is not None
