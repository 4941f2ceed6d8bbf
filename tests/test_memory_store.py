from __future__ import annotations

import pytest

from credit_ledger.errors import TransactionConflict
from credit_ledger.models.grant import CreditGrant, GrantSourceType
from credit_ledger.models.ledger import LedgerEntry, LedgerEventType
from credit_ledger.models.user import UserAccount


def _grant(user_id: str, amount: int) -> CreditGrant:
    return CreditGrant(
        user_id=user_id,
        amount=amount,
        remaining_amount=amount,
        source_type=GrantSourceType.PURCHASED,
    )


@pytest.mark.asyncio
async def test_failed_transaction_leaves_no_trace(db):
    await db.add_user(UserAccount(id="user-1"))

    with pytest.raises(RuntimeError, match="boom"):
        async with db.transaction():
            await db.lock_user("user-1")
            grant = await db.add_grant(_grant("user-1", 10))
            await db.set_user_balance("user-1", 10)
            # Visible inside the transaction
            assert (await db.get_grant(grant.id)).remaining_amount == 10
            await db.add_ledger_entry(
                LedgerEntry(event_type=LedgerEventType.ERROR, user_id="user-1", message="x")
            )
            raise RuntimeError("boom")

    assert await db.get_grant(grant.id) is None
    assert (await db.get_user("user-1")).credits_balance == 0
    # Audit entries are not part of the transaction
    assert len(await db.get_ledger_entries("user-1")) == 1


@pytest.mark.asyncio
async def test_debit_requires_expected_remaining(db):
    grant = await db.add_grant(_grant("user-1", 10))

    with pytest.raises(TransactionConflict):
        await db.debit_grant(grant.id, expected_remaining=8, new_remaining=3)
    with pytest.raises(ValueError):
        await db.debit_grant(grant.id, expected_remaining=10, new_remaining=11)

    await db.debit_grant(grant.id, expected_remaining=10, new_remaining=4)
    assert (await db.get_grant(grant.id)).remaining_amount == 4


@pytest.mark.asyncio
async def test_lock_user_outside_transaction_is_an_error(db):
    await db.add_user(UserAccount(id="user-1"))
    with pytest.raises(RuntimeError):
        await db.lock_user("user-1")


@pytest.mark.asyncio
async def test_reads_return_copies(db):
    await db.add_user(UserAccount(id="user-1", credits_balance=3))
    user = await db.get_user("user-1")
    user.credits_balance = 99
    assert (await db.get_user("user-1")).credits_balance == 3
