from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..cache.base import AsyncCacheBackend, BalanceProjection
from ..db.base import BaseLedgerStore
from ..errors import UserNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.grant import CreditGrant, GrantSourceType
from ..models.results import (
    BalanceReconciliation,
    ConsumptionResult,
    ExpiredSummary,
    GrantResult,
)
from ..models.usage import UsageRecord
from ..models.user import UserAccount
from .audit_service import LedgerAuditor
from .consumption_service import ConsumptionService
from .expiration_service import ExpirationService
from .grant_service import GrantService
from .renewal_service import RenewalService
from .usage_recorder import UsageRecorder


class CreditService:
    """
    High-level entry point for collaborators.

    Mutations go through the grant, consumption and expiration services;
    everything else here is a read. `get_balance` reads the store unless the
    cache backend is shared across processes, and its answer must not be
    used to decide a debit: `consume` re-checks the balance under lock.
    """

    def __init__(
        self,
        db: BaseLedgerStore,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        balance_cache_ttl_seconds: int | None = 300,
        usage_history_limit: int = 50,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._balances = (
            BalanceProjection(cache, ttl_seconds=balance_cache_ttl_seconds)
            if cache is not None
            else None
        )
        self.usage = UsageRecorder(db, history_limit=usage_history_limit)
        self.grants = GrantService(db, ledger, self._balances)
        self.consumption = ConsumptionService(db, ledger, self.usage, self._balances)
        self.expiration = ExpirationService(db, ledger, self._balances)
        self.auditor = LedgerAuditor(db, ledger)
        self.renewals = RenewalService(db, self.grants)

    async def register_user(
        self, user_id: str, external_user_ref: str | None = None
    ) -> UserAccount:
        """Create an account with a zero balance. Credits arrive via grants."""
        return await self._db.add_user(
            UserAccount(id=user_id, external_user_ref=external_user_ref)
        )

    async def grant(
        self,
        user_id: str,
        amount: int,
        source_type: GrantSourceType | str,
        description: str = "",
        now: Optional[datetime] = None,
        correlation_id: str | None = None,
    ) -> GrantResult:
        return await self.grants.grant(
            user_id=user_id,
            amount=amount,
            source_type=source_type,
            description=description,
            now=now,
            correlation_id=correlation_id,
        )

    async def consume(
        self,
        user_id: str,
        cost: int,
        feature: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        correlation_id: str | None = None,
    ) -> ConsumptionResult:
        return await self.consumption.consume(
            user_id=user_id,
            cost=cost,
            feature=feature,
            metadata=metadata,
            now=now,
            correlation_id=correlation_id,
        )

    async def prepare_store(self) -> None:
        await self._db.ensure_indexes()

    async def expire_stale_grants(self, now: Optional[datetime] = None) -> ExpiredSummary:
        return await self.expiration.expire_stale_grants(now)

    async def get_balance(self, user_id: str) -> int:
        shared = self._balances is not None and self._balances.shared
        if shared:
            cached = await self._balances.get(user_id)
            if cached is not None:
                return cached
        user = await self._require_user(user_id)
        if shared:
            await self._balances.publish(user_id, user.credits_balance)
        return user.credits_balance

    async def _require_user(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def get_grants(self, user_id: str) -> Iterable[CreditGrant]:
        await self._require_user(user_id)
        return await self._db.get_grants(user_id)

    async def get_usage_history(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[UsageRecord]:
        await self._require_user(user_id)
        return await self.usage.history(user_id, limit=limit)

    async def audit_user(self, user_id: str) -> BalanceReconciliation:
        return await self.auditor.reconcile_user(user_id)

    async def audit_all(self) -> List[BalanceReconciliation]:
        return await self.auditor.reconcile_all()
