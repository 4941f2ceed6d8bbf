from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction. The ledger only uses it for the
    read-only balance projection served to collaborators.
    """

    # True when every process writing the ledger sees the same entries
    shared: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class BalanceProjection:
    """
    Cached copy of committed balances, published after each commit.

    Never consulted by grant, consume or expiry: those read the balance row
    under lock. Reads are only served from a shared backend; a process-local
    copy cannot see commits made by other workers or the expiry CLI.
    """

    def __init__(self, backend: AsyncCacheBackend, ttl_seconds: int | None = 300) -> None:
        self._backend = backend
        self._ttl_seconds = ttl_seconds

    @property
    def shared(self) -> bool:
        return self._backend.shared

    @staticmethod
    def key(user_id: str) -> str:
        return f"credit:user:{user_id}:balance"

    async def get(self, user_id: str) -> Optional[int]:
        cached = await self._backend.get(self.key(user_id))
        if isinstance(cached, int) and not isinstance(cached, bool):
            return cached
        return None

    async def publish(self, user_id: str, balance: int) -> None:
        await self._backend.set(self.key(user_id), balance, ttl_seconds=self._ttl_seconds)

    async def invalidate(self, user_id: str) -> None:
        await self._backend.delete(self.key(user_id))
