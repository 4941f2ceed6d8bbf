from __future__ import annotations

import logging
from typing import List

from ..db.base import BaseLedgerStore
from ..errors import UserNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.results import BalanceReconciliation


logger = logging.getLogger(__name__)


class LedgerAuditor:
    """
    Out-of-band check that each cached balance equals the sum of its grants.

    Reports drift; never corrects it.
    """

    def __init__(self, db: BaseLedgerStore, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def reconcile_user(self, user_id: str) -> BalanceReconciliation:
        # Read under the user lock so no grant or consume lands mid-scan
        async with self._db.transaction():
            user = await self._db.lock_user(user_id)
            if user is None:
                raise UserNotFound(user_id)
            live = await self._db.get_live_grants(user_id)

        report = BalanceReconciliation(
            user_id=user_id,
            cached_balance=user.credits_balance,
            ledger_balance=sum(g.remaining_amount for g in live),
            live_grants=len(live),
        )
        if not report.in_sync:
            logger.error(
                "Balance drift for user %s: cached %s, ledger %s",
                user_id,
                report.cached_balance,
                report.ledger_balance,
            )
            await self._ledger.log_audit(
                user_id=user_id,
                message="Balance drift detected",
                details={
                    "cached_balance": report.cached_balance,
                    "ledger_balance": report.ledger_balance,
                    "drift": report.drift,
                },
            )
        return report

    async def reconcile_all(self) -> List[BalanceReconciliation]:
        """Returns only the users whose balance has drifted."""
        drifted: List[BalanceReconciliation] = []
        for user_id in await self._db.get_all_user_ids():
            report = await self.reconcile_user(user_id)
            if not report.in_sync:
                drifted.append(report)
        logger.info("Audit finished: %s drifted balances", len(drifted))
        return drifted
