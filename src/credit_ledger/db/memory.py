from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

from .base import BaseLedgerStore
from ..errors import TransactionConflict, UserAlreadyExists, UserNotFound
from ..models.grant import CreditGrant
from ..models.ledger import LedgerEntry
from ..models.usage import UsageRecord
from ..models.user import UserAccount


@dataclass
class _PendingWrites:
    users: Dict[str, UserAccount] = field(default_factory=dict)
    grants: Dict[str, CreditGrant] = field(default_factory=dict)
    usage: List[UsageRecord] = field(default_factory=list)
    locks: Dict[str, asyncio.Lock] = field(default_factory=dict)


class InMemoryLedgerStore(BaseLedgerStore):
    """
    In-memory store used for tests and local development.

    Transactions are real: writes are staged per task and applied on a clean
    exit, and `lock_user` holds a per-user `asyncio.Lock` until the
    transaction ends, which plays the role of a row lock. Reads yield to the
    event loop the way a driver round trip would, so concurrent callers
    genuinely interleave.

    Audit ledger entries bypass transactions so that failures can be
    recorded after a rollback.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._grants: Dict[str, CreditGrant] = {}
        self._usage: List[UsageRecord] = []
        self._ledger: List[LedgerEntry] = []
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._id_counter: int = 0
        self._pending: ContextVar[Optional[_PendingWrites]] = ContextVar(
            f"credit_ledger_memory_tx_{id(self)}", default=None
        )

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @staticmethod
    async def _round_trip() -> None:
        await asyncio.sleep(0)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._pending.get() is not None:
            yield
            return

        pending = _PendingWrites()
        token = self._pending.set(pending)
        try:
            yield
            self._users.update(pending.users)
            self._grants.update(pending.grants)
            self._usage.extend(pending.usage)
        finally:
            self._pending.reset(token)
            for lock in pending.locks.values():
                lock.release()

    # Views over committed state plus this task's staged writes
    def _user_view(self, user_id: str) -> Optional[UserAccount]:
        pending = self._pending.get()
        if pending is not None and user_id in pending.users:
            return pending.users[user_id]
        return self._users.get(user_id)

    def _grants_view(self) -> Dict[str, CreditGrant]:
        pending = self._pending.get()
        if pending is None or not pending.grants:
            return self._grants
        return {**self._grants, **pending.grants}

    def _usage_view(self) -> List[UsageRecord]:
        pending = self._pending.get()
        if pending is None:
            return self._usage
        return self._usage + pending.usage

    # Users
    async def add_user(self, user: UserAccount) -> UserAccount:
        if user.id is None:
            user.id = self._next_id()
        if self._user_view(user.id) is not None:
            raise UserAlreadyExists(user.id)
        pending = self._pending.get()
        target = pending.users if pending is not None else self._users
        target[user.id] = user.model_copy(deep=True)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._user_view(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_all_user_ids(self) -> List[str]:
        return list(self._users.keys())

    async def lock_user(self, user_id: str) -> Optional[UserAccount]:
        pending = self._pending.get()
        if pending is None:
            raise RuntimeError("lock_user requires an open transaction")
        if user_id not in pending.locks:
            lock = self._user_locks.setdefault(user_id, asyncio.Lock())
            await lock.acquire()
            pending.locks[user_id] = lock
        await self._round_trip()
        return await self.get_user(user_id)

    async def set_user_balance(self, user_id: str, credits_balance: int) -> None:
        if credits_balance < 0:
            raise ValueError("credits_balance cannot be negative")
        user = self._user_view(user_id)
        if user is None:
            raise UserNotFound(user_id)
        updated = user.model_copy(update={"credits_balance": credits_balance})
        pending = self._pending.get()
        target = pending.users if pending is not None else self._users
        target[user_id] = updated

    # Grants
    async def add_grant(self, grant: CreditGrant) -> CreditGrant:
        if grant.id is None:
            grant.id = self._next_id()
        pending = self._pending.get()
        target = pending.grants if pending is not None else self._grants
        target[grant.id] = grant.model_copy(deep=True)
        return grant

    async def get_grant(self, grant_id: str) -> Optional[CreditGrant]:
        grant = self._grants_view().get(grant_id)
        return grant.model_copy(deep=True) if grant else None

    async def get_grants(self, user_id: str) -> Iterable[CreditGrant]:
        return [
            g.model_copy(deep=True)
            for g in self._grants_view().values()
            if g.user_id == user_id
        ]

    async def get_live_grants(self, user_id: str) -> List[CreditGrant]:
        await self._round_trip()
        return [
            g.model_copy(deep=True)
            for g in self._grants_view().values()
            if g.user_id == user_id and g.remaining_amount > 0
        ]

    async def find_grant_by_description(
        self, user_id: str, description: str
    ) -> Optional[CreditGrant]:
        for grant in self._grants_view().values():
            if grant.user_id == user_id and grant.description == description:
                return grant.model_copy(deep=True)
        return None

    async def find_expired_grants(
        self, as_of: datetime, user_id: Optional[str] = None
    ) -> List[CreditGrant]:
        await self._round_trip()
        return [
            g.model_copy(deep=True)
            for g in self._grants_view().values()
            if g.remaining_amount > 0
            and g.is_expired(as_of)
            and (user_id is None or g.user_id == user_id)
        ]

    async def debit_grant(
        self, grant_id: str, expected_remaining: int, new_remaining: int
    ) -> None:
        grant = self._grants_view().get(grant_id)
        if grant is None:
            raise LookupError(f"grant {grant_id!r} not found")
        if not 0 <= new_remaining <= expected_remaining:
            raise ValueError("a grant can only be debited towards zero")
        if grant.remaining_amount != expected_remaining:
            raise TransactionConflict(
                f"grant {grant_id!r} changed concurrently: expected "
                f"{expected_remaining}, found {grant.remaining_amount}"
            )
        updated = grant.model_copy(update={"remaining_amount": new_remaining})
        pending = self._pending.get()
        target = pending.grants if pending is not None else self._grants
        target[grant_id] = updated

    # Usage history
    async def add_usage_record(self, record: UsageRecord) -> UsageRecord:
        if record.id is None:
            record.id = self._next_id()
        pending = self._pending.get()
        target = pending.usage if pending is not None else self._usage
        target.append(record.model_copy(deep=True))
        return record

    async def get_usage_records(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[UsageRecord]:
        newest_first = sorted(
            (r for r in reversed(self._usage_view()) if r.user_id == user_id),
            key=lambda r: r.created_at,
            reverse=True,
        )
        if limit is not None:
            newest_first = newest_first[:limit]
        return [r.model_copy(deep=True) for r in newest_first]

    # Audit ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    async def get_ledger_entries(self, user_id: str) -> List[LedgerEntry]:
        return [e for e in self._ledger if e.user_id == user_id]
