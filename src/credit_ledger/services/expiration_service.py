from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from ..cache.base import BalanceProjection
from ..db.base import BaseLedgerStore
from ..logging.ledger_logger import LedgerLogger, after_commit
from ..models.base import ensure_utc, utcnow
from ..models.results import ExpiredSummary


logger = logging.getLogger(__name__)


class ExpirationService:
    """
    Scheduled sweep that forfeits whatever is left on expired grants.

    Each user is processed in its own transaction: the user's row is locked,
    their expired grants are re-read and zeroed, and the balance is reduced
    once by the total. A failure stops the sweep with earlier users committed
    and later users untouched; running it again picks up where it stopped,
    since zeroed grants no longer match.
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

    async def expire_stale_grants(self, now: Optional[datetime] = None) -> ExpiredSummary:
        as_of = ensure_utc(now) if now is not None else utcnow()
        stale = await self._db.find_expired_grants(as_of)
        summary = ExpiredSummary()
        if not stale:
            logger.debug("No expired grants as of %s", as_of.isoformat())
            return summary

        # First-seen order
        user_ids: List[str] = list(dict.fromkeys(g.user_id for g in stale))
        for user_id in user_ids:
            expired, forfeited = await self.expire_user_grants(user_id, as_of)
            if expired == 0:
                continue
            summary.grants_expired += expired
            summary.credits_forfeited += forfeited
            summary.users_affected += 1

        logger.info(
            "Expired %s grants, forfeiting %s credits from %s users",
            summary.grants_expired,
            summary.credits_forfeited,
            summary.users_affected,
        )
        return summary

    async def expire_user_grants(self, user_id: str, as_of: datetime) -> Tuple[int, int]:
        """
        Forfeit one user's expired grants atomically.
        Returns (grants expired, credits forfeited).
        """
        as_of = ensure_utc(as_of)
        floored = False
        new_balance: Optional[int] = None

        async with self._db.transaction():
            user = await self._db.lock_user(user_id)
            # Re-read under the lock; consumption may have drained some since the scan
            grants = await self._db.find_expired_grants(as_of, user_id=user_id)
            forfeited = 0
            for grant in grants:
                await self._db.debit_grant(grant.id or "", grant.remaining_amount, 0)
                forfeited += grant.remaining_amount

            if user is not None and forfeited > 0:
                floored = user.credits_balance < forfeited
                new_balance = max(0, user.credits_balance - forfeited)
                await self._db.set_user_balance(user_id, new_balance)

        if not grants:
            return 0, 0

        if user is None:
            logger.error(
                "Zeroed %s expired grants for missing user %s", len(grants), user_id
            )
        if floored:
            logger.warning(
                "Expiry for user %s forfeited %s credits but balance was %s; "
                "balance floored at zero, ledger needs investigation",
                user_id,
                forfeited,
                user.credits_balance if user else None,
            )

        async with after_commit("Expiry audit entry", user_id):
            await self._ledger.log_expiry(
                user_id=user_id,
                details={
                    "grant_ids": [g.id for g in grants],
                    "expired_total": forfeited,
                    "new_balance": new_balance,
                    "floored": floored,
                    "as_of": as_of.isoformat(),
                },
            )
        if self._balances and new_balance is not None:
            async with after_commit("Balance publish", user_id):
                await self._balances.publish(user_id, new_balance)

        return len(grants), forfeited
