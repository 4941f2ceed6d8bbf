from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

from .base import AsyncCacheBackend


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Process-local cache with optional TTL, for tests and single-process use.
    """

    def __init__(self) -> None:
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and deadline < time.monotonic():
            self._store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        deadline = time.monotonic() + ttl_seconds if ttl_seconds is not None else None
        self._store[key] = (value, deadline)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)
