from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from .grant import CreditGrant
from .usage import UsageRecord


class GrantDebit(BaseModel):
    grant_id: str
    debited: int
    remaining_before: int
    remaining_after: int


class GrantResult(BaseModel):
    user_id: str
    balance: int
    grant: CreditGrant


class ConsumptionResult(BaseModel):
    """
    Outcome of a consumption. `usage_record` is None for zero-cost calls,
    which touch nothing.
    """

    user_id: str
    balance: int
    credits_spent: int = 0
    debits: List[GrantDebit] = Field(default_factory=list)
    usage_record: Optional[UsageRecord] = None


class ExpiredSummary(BaseModel):
    grants_expired: int = 0
    credits_forfeited: int = 0
    users_affected: int = 0


class BalanceReconciliation(BaseModel):
    user_id: str
    cached_balance: int
    ledger_balance: int
    live_grants: int

    @property
    def drift(self) -> int:
        return self.cached_balance - self.ledger_balance

    @property
    def in_sync(self) -> bool:
        return self.drift == 0
