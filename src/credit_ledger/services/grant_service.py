from __future__ import annotations

import calendar
import logging
from datetime import datetime
from typing import Optional

from ..cache.base import BalanceProjection
from ..db.base import BaseLedgerStore
from ..errors import InvalidAmount, InvalidSourceType, UserNotFound
from ..logging.ledger_logger import LedgerLogger, after_commit
from ..models.base import ensure_utc, utcnow
from ..models.grant import CreditGrant, GrantSourceType
from ..models.results import GrantResult


logger = logging.getLogger(__name__)


def add_one_month(moment: datetime) -> datetime:
    """
    Same day-of-month in the next calendar month, clamped to that month's
    last day (Jan 31 -> Feb 28/29).
    """
    if moment.month == 12:
        year, month = moment.year + 1, 1
    else:
        year, month = moment.year, moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_expiry(source_type: GrantSourceType, granted_at: datetime) -> Optional[datetime]:
    if source_type is GrantSourceType.MONTHLY:
        return add_one_month(granted_at)
    return None


def coerce_source_type(source_type: GrantSourceType | str) -> GrantSourceType:
    try:
        return GrantSourceType(source_type)
    except ValueError as exc:
        raise InvalidSourceType(source_type) from exc


class GrantService:
    """
    Appends a grant to the ledger and credits the running balance in one
    transaction.

    Not idempotent: callers that may retry (webhooks, schedulers) deduplicate
    upstream, e.g. with `find_grant_by_description`.
    """

    def __init__(
        self,
        db: BaseLedgerStore,
        ledger: LedgerLogger,
        balances: Optional[BalanceProjection] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._balances = balances

    async def grant(
        self,
        user_id: str,
        amount: int,
        source_type: GrantSourceType | str,
        description: str = "",
        now: Optional[datetime] = None,
        correlation_id: str | None = None,
    ) -> GrantResult:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(amount)
        kind = coerce_source_type(source_type)
        granted_at = ensure_utc(now) if now is not None else utcnow()

        async with self._db.transaction():
            user = await self._db.lock_user(user_id)
            if user is None:
                raise UserNotFound(user_id)

            grant = CreditGrant(
                user_id=user_id,
                amount=amount,
                remaining_amount=amount,
                source_type=kind,
                description=description,
                expires_at=compute_expiry(kind, granted_at),
                created_at=granted_at,
            )
            grant = await self._db.add_grant(grant)

            new_balance = user.credits_balance + amount
            await self._db.set_user_balance(user_id, new_balance)

        logger.info(
            "Granted %s %s credits to user %s (balance %s)",
            amount,
            kind.value,
            user_id,
            new_balance,
        )
        async with after_commit("Grant audit entry", user_id):
            await self._ledger.log_grant(
                user_id=user_id,
                details={
                    "grant_id": grant.id,
                    "amount": amount,
                    "source_type": kind.value,
                    "description": description,
                    "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
                    "new_balance": new_balance,
                },
                correlation_id=correlation_id,
            )
        if self._balances:
            async with after_commit("Balance publish", user_id):
                await self._balances.publish(user_id, new_balance)

        return GrantResult(user_id=user_id, balance=new_balance, grant=grant)
