from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..cache.base import BalanceProjection
from ..db.base import BaseLedgerStore
from ..errors import InsufficientCredits, InvalidAmount, LedgerDesync, UserNotFound
from ..logging.ledger_logger import LedgerLogger, after_commit
from ..models.base import ensure_utc
from ..models.grant import CreditGrant, GrantSourceType
from ..models.results import ConsumptionResult, GrantDebit
from .usage_recorder import UsageRecorder


logger = logging.getLogger(__name__)

_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def consumption_order_key(grant: CreditGrant) -> Tuple[int, bool, datetime, datetime]:
    """
    Sort key for spending grants:

    1. monthly grants before every other source
    2. grants that can expire before grants that cannot
    3. earlier expiry first
    4. older grant first
    """
    return (
        0 if grant.source_type is GrantSourceType.MONTHLY else 1,
        grant.expires_at is None,
        grant.expires_at or _NEVER,
        grant.created_at,
    )


def order_grants_for_consumption(grants: Iterable[CreditGrant]) -> List[CreditGrant]:
    return sorted(grants, key=consumption_order_key)


def plan_debits(grants: Iterable[CreditGrant], cost: int) -> Tuple[List[GrantDebit], int]:
    """
    Walk the grants in consumption order and take what each can give.

    Returns the debits and the part of `cost` left uncovered.
    """
    debits: List[GrantDebit] = []
    owed = cost
    for grant in order_grants_for_consumption(grants):
        if owed <= 0:
            break
        if grant.remaining_amount <= 0:
            continue
        take = min(grant.remaining_amount, owed)
        debits.append(
            GrantDebit(
                grant_id=grant.id or "",
                debited=take,
                remaining_before=grant.remaining_amount,
                remaining_after=grant.remaining_amount - take,
            )
        )
        owed -= take
    return debits, owed


class ConsumptionService:
    """
    Spends credits for a feature.

    The balance check, grant selection, every grant debit, the usage record
    and the balance decrement run in one store transaction holding the user's
    row lock, so concurrent consumers for the same user serialize and never
    compute overlapping debits.
    """

    def __init__(
        self,
        db: BaseLedgerStore,
        ledger: LedgerLogger,
        usage: UsageRecorder,
        balances: Optional[BalanceProjection] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._usage = usage
        self._balances = balances

    async def consume(
        self,
        user_id: str,
        cost: int,
        feature: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        correlation_id: str | None = None,
    ) -> ConsumptionResult:
        if isinstance(cost, bool) or not isinstance(cost, int):
            raise InvalidAmount(cost, "cost must be an integer")

        if cost <= 0:
            # Free for this caller: nothing is touched or logged
            user = await self._db.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id)
            return ConsumptionResult(user_id=user_id, balance=user.credits_balance)

        try:
            async with self._db.transaction():
                user = await self._db.lock_user(user_id)
                if user is None:
                    raise UserNotFound(user_id)
                if user.credits_balance < cost:
                    raise InsufficientCredits(user_id, cost, user.credits_balance)

                live = await self._db.get_live_grants(user_id)
                debits, shortfall = plan_debits(live, cost)
                if shortfall > 0:
                    raise LedgerDesync(
                        user_id, cost, user.credits_balance, covered=cost - shortfall
                    )

                for debit in debits:
                    await self._db.debit_grant(
                        debit.grant_id, debit.remaining_before, debit.remaining_after
                    )
                record = await self._usage.record(
                    user_id=user_id,
                    feature=feature,
                    credits_spent=cost,
                    metadata=metadata,
                    created_at=ensure_utc(now) if now is not None else None,
                )
                new_balance = user.credits_balance - cost
                await self._db.set_user_balance(user_id, new_balance)
        except InsufficientCredits as exc:
            logger.info(
                "User %s cannot afford %s (%s credits, balance %s)",
                user_id,
                feature,
                exc.requested,
                exc.balance,
            )
            raise
        except LedgerDesync as exc:
            logger.error("%s", exc, extra={"user_id": user_id, "feature": feature})
            async with after_commit("Desync audit entry", user_id):
                await self._ledger.log_error(
                    message="Ledger desync during consumption",
                    details={**exc.details(), "feature": feature},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
            raise

        async with after_commit("Consumption audit entry", user_id):
            await self._ledger.log_consumption(
                user_id=user_id,
                details={
                    "feature": feature,
                    "credits_spent": cost,
                    "usage_record_id": record.id,
                    "debits": [d.model_dump() for d in debits],
                    "new_balance": new_balance,
                },
                correlation_id=correlation_id,
            )
        if self._balances:
            async with after_commit("Balance publish", user_id):
                await self._balances.publish(user_id, new_balance)

        return ConsumptionResult(
            user_id=user_id,
            balance=new_balance,
            credits_spent=cost,
            debits=debits,
            usage_record=record,
        )
