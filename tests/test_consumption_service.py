from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from credit_ledger.errors import InsufficientCredits, InvalidAmount, LedgerDesync, UserNotFound
from credit_ledger.models.grant import CreditGrant, GrantSourceType
from credit_ledger.models.ledger import LedgerEventType
from credit_ledger.services.consumption_service import (
    order_grants_for_consumption,
    plan_debits,
)


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _grant(
    grant_id: str,
    amount: int,
    source: GrantSourceType,
    expires_in_days: Optional[int],
    age_days: int = 1,
) -> CreditGrant:
    return CreditGrant(
        id=grant_id,
        user_id="user-1",
        amount=amount,
        remaining_amount=amount,
        source_type=source,
        expires_at=NOW + timedelta(days=expires_in_days) if expires_in_days is not None else None,
        created_at=NOW - timedelta(days=age_days),
    )


async def _seed(db, user_id: str, *grants: CreditGrant) -> None:
    """Write grants straight to the store, keeping the balance consistent."""
    user = await db.get_user(user_id)
    for grant in grants:
        await db.add_grant(grant)
    await db.set_user_balance(
        user_id, user.credits_balance + sum(g.remaining_amount for g in grants)
    )


def test_order_puts_monthly_first_then_soonest_expiry():
    purchased = _grant("p", 100, GrantSourceType.PURCHASED, None)
    late = _grant("m20", 20, GrantSourceType.MONTHLY, 20)
    soon = _grant("m5", 30, GrantSourceType.MONTHLY, 5)

    ordered = order_grants_for_consumption([purchased, late, soon])
    assert [g.id for g in ordered] == ["m5", "m20", "p"]


def test_order_breaks_ties_oldest_first():
    newer = _grant("new", 10, GrantSourceType.PURCHASED, None, age_days=1)
    older = _grant("old", 10, GrantSourceType.PURCHASED, None, age_days=9)
    expiring = _grant("exp", 10, GrantSourceType.PURCHASED, 3, age_days=0)

    ordered = order_grants_for_consumption([newer, older, expiring])
    # Expiring grants go before non-expiring ones within the same source
    assert [g.id for g in ordered] == ["exp", "old", "new"]


def test_plan_debits_reports_shortfall():
    grants = [
        _grant("a", 10, GrantSourceType.MONTHLY, 5),
        _grant("b", 5, GrantSourceType.PURCHASED, None),
    ]
    debits, shortfall = plan_debits(grants, 12)
    assert [(d.grant_id, d.debited, d.remaining_after) for d in debits] == [
        ("a", 10, 0),
        ("b", 2, 3),
    ]
    assert shortfall == 0

    _, shortfall = plan_debits(grants, 20)
    assert shortfall == 5


@pytest.mark.asyncio
async def test_consume_follows_grant_priority(service, db):
    await service.register_user("user-1")
    await _seed(
        db,
        "user-1",
        _grant("p", 100, GrantSourceType.PURCHASED, None),
        _grant("m5", 30, GrantSourceType.MONTHLY, 5),
        _grant("m20", 20, GrantSourceType.MONTHLY, 20),
    )

    result = await service.consume("user-1", 40, "FEATURE_X", now=NOW)

    assert result.balance == 110
    assert (await db.get_grant("m5")).remaining_amount == 0
    assert (await db.get_grant("m20")).remaining_amount == 10
    assert (await db.get_grant("p")).remaining_amount == 100
    assert [(d.grant_id, d.debited) for d in result.debits] == [("m5", 30), ("m20", 10)]


@pytest.mark.asyncio
async def test_plan_renewal_scenario(service, db, tmp_path):
    await service.register_user("user-1")

    granted = await service.grant("user-1", 50, "monthly", "Plan renewal", now=NOW)
    assert granted.balance == 50

    first = await service.consume("user-1", 5, "FEATURE_A", {"doc": "a.pdf"}, now=NOW)
    assert first.balance == 45
    assert (await db.get_grant(granted.grant.id)).remaining_amount == 45
    history = await service.get_usage_history("user-1")
    assert [(r.feature_used, r.credits_spent) for r in history] == [("FEATURE_A", 5)]
    assert history[0].metadata == {"doc": "a.pdf"}

    topup = await service.grant("user-1", 20, "purchased", "Top-up", now=NOW)
    assert topup.balance == 65
    live = await db.get_live_grants("user-1")
    assert sorted(g.remaining_amount for g in live) == [20, 45]

    second = await service.consume(
        "user-1", 50, "FEATURE_B", now=NOW + timedelta(minutes=5)
    )
    assert second.balance == 15
    assert (await db.get_grant(granted.grant.id)).remaining_amount == 0
    assert (await db.get_grant(topup.grant.id)).remaining_amount == 15
    assert [d.debited for d in second.debits] == [45, 5]

    # One usage record per call, charged the full cost
    history = await service.get_usage_history("user-1")
    assert [(r.feature_used, r.credits_spent) for r in history] == [
        ("FEATURE_B", 50),
        ("FEATURE_A", 5),
    ]

    events = [e.event_type for e in await db.get_ledger_entries("user-1")]
    assert events == [
        LedgerEventType.GRANT,
        LedgerEventType.CONSUME,
        LedgerEventType.GRANT,
        LedgerEventType.CONSUME,
    ]
    lines = (tmp_path / "ledger.log").read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["details"]["credits_spent"] == 50


@pytest.mark.asyncio
@pytest.mark.parametrize("cost", [0, -3])
async def test_non_positive_cost_is_a_no_op(service, db, cost):
    await service.register_user("user-1")
    await service.grant("user-1", 10, "purchased")

    result = await service.consume("user-1", cost, "FREE")

    assert result.balance == 10
    assert result.usage_record is None
    assert result.debits == []
    assert await service.get_usage_history("user-1") == []
    assert [g.remaining_amount for g in await service.get_grants("user-1")] == [10]
    assert len(await db.get_ledger_entries("user-1")) == 1


@pytest.mark.asyncio
async def test_insufficient_credits_leaves_ledger_untouched(service, db):
    await service.register_user("user-1")
    await service.grant("user-1", 6, "monthly", now=NOW)
    await service.grant("user-1", 4, "purchased", now=NOW)

    with pytest.raises(InsufficientCredits, match="insufficient credits") as excinfo:
        await service.consume("user-1", 11, "FEATURE_A", now=NOW)

    assert excinfo.value.requested == 11
    assert excinfo.value.balance == 10
    assert await service.get_balance("user-1") == 10
    assert sorted(g.remaining_amount for g in await service.get_grants("user-1")) == [4, 6]
    assert await service.get_usage_history("user-1") == []


@pytest.mark.asyncio
async def test_exact_balance_can_be_spent(service):
    await service.register_user("user-1")
    await service.grant("user-1", 10, "purchased")

    result = await service.consume("user-1", 10, "FEATURE_A")
    assert result.balance == 0
    assert await service.get_balance("user-1") == 0


@pytest.mark.asyncio
async def test_desync_rolls_back_and_is_recorded(service, db):
    await service.register_user("user-1")
    await service.grant("user-1", 5, "purchased")
    # Balance bumped without a backing grant
    await db.set_user_balance("user-1", 12)

    with pytest.raises(LedgerDesync) as excinfo:
        await service.consume("user-1", 8, "FEATURE_A")

    assert excinfo.value.covered == 5
    assert (await db.get_user("user-1")).credits_balance == 12
    assert [g.remaining_amount for g in await service.get_grants("user-1")] == [5]
    assert await service.get_usage_history("user-1") == []

    errors = [
        e
        for e in await db.get_ledger_entries("user-1")
        if e.event_type is LedgerEventType.ERROR
    ]
    assert len(errors) == 1
    assert errors[0].details["requested"] == 8


@pytest.mark.asyncio
async def test_consume_rejects_unknown_user_and_bad_cost(service):
    with pytest.raises(UserNotFound):
        await service.consume("ghost", 1, "FEATURE_A")
    with pytest.raises(UserNotFound):
        await service.consume("ghost", 0, "FEATURE_A")

    await service.register_user("user-1")
    with pytest.raises(InvalidAmount):
        await service.consume("user-1", 1.5, "FEATURE_A")


@pytest.mark.asyncio
async def test_balance_projection_follows_commits(service, cache):
    await service.register_user("user-1")
    await service.grant("user-1", 30, "purchased")
    assert await cache.get("credit:user:user-1:balance") == 30

    await service.consume("user-1", 12, "FEATURE_A")
    assert await cache.get("credit:user:user-1:balance") == 18

    with pytest.raises(InsufficientCredits):
        await service.consume("user-1", 100, "FEATURE_A")
    assert await cache.get("credit:user:user-1:balance") == 18
