from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional

from ..models.grant import CreditGrant
from ..models.ledger import LedgerEntry
from ..models.usage import UsageRecord
from ..models.user import UserAccount


class BaseLedgerStore(ABC):
    """
    Storage-agnostic async interface for users, grants, usage and audit entries.

    Every balance or grant mutation happens inside `transaction()`. Inside a
    transaction, `lock_user` serializes all work on that user's balance row
    until the transaction ends; different users never contend. Writes made
    inside a transaction are all visible after a clean exit and none are
    visible after an exception.

    `debit_grant` is a compare-and-set: it only applies when the stored
    remaining amount still equals `expected_remaining`, otherwise it raises
    `TransactionConflict`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Open an atomic unit of work. Nested calls join the outer transaction.
        Commits on success, rolls back on exception.
        """
        yield

    async def ensure_indexes(self) -> None:
        """Create secondary indexes where the backend supports them."""
        return None

    # Users
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def get_all_user_ids(self) -> List[str]: ...

    @abstractmethod
    async def lock_user(self, user_id: str) -> Optional[UserAccount]:
        """
        Lock the user's balance row for the rest of the current transaction
        and return its current state, or None if the user does not exist.
        """
        ...

    @abstractmethod
    async def set_user_balance(self, user_id: str, credits_balance: int) -> None: ...

    # Grants
    @abstractmethod
    async def add_grant(self, grant: CreditGrant) -> CreditGrant: ...

    @abstractmethod
    async def get_grant(self, grant_id: str) -> Optional[CreditGrant]: ...

    @abstractmethod
    async def get_grants(self, user_id: str) -> Iterable[CreditGrant]:
        """All grants for the user, oldest first, including exhausted ones."""
        ...

    @abstractmethod
    async def get_live_grants(self, user_id: str) -> List[CreditGrant]:
        """Grants with `remaining_amount > 0`. No ordering is promised."""
        ...

    @abstractmethod
    async def find_grant_by_description(
        self, user_id: str, description: str
    ) -> Optional[CreditGrant]: ...

    @abstractmethod
    async def find_expired_grants(
        self, as_of: datetime, user_id: Optional[str] = None
    ) -> List[CreditGrant]:
        """
        Grants with `remaining_amount > 0` and `expires_at < as_of`,
        optionally restricted to one user. Never-expiring grants are excluded.
        """
        ...

    @abstractmethod
    async def debit_grant(
        self, grant_id: str, expected_remaining: int, new_remaining: int
    ) -> None: ...

    # Usage history
    @abstractmethod
    async def add_usage_record(self, record: UsageRecord) -> UsageRecord: ...

    @abstractmethod
    async def get_usage_records(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[UsageRecord]:
        """Newest first."""
        ...

    # Audit ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def get_ledger_entries(self, user_id: str) -> List[LedgerEntry]: ...
