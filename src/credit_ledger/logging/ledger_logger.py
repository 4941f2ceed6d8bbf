from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from ..db.base import BaseLedgerStore
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


@asynccontextmanager
async def after_commit(step: str, user_id: Optional[str]) -> AsyncIterator[None]:
    """
    Guard follow-up work (audit entry, balance publish) once the transaction
    has finished. Failures are logged at error level and not raised, so the
    caller still receives the outcome of the transaction.
    """
    try:
        yield
    except Exception:
        logger.exception("%s failed for user %s after commit", step, user_id)


class LedgerLogger:
    """
    Audit trail writer: persists a `LedgerEntry` through the store and mirrors
    it as line-delimited JSON to a file for log aggregators.

    Services call it after their transaction has committed (or rolled back),
    so an entry never describes work that did not happen.
    """

    def __init__(self, db: BaseLedgerStore, file_path: Path) -> None:
        self._db = db
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_grant(
        self, user_id: str, details: dict[str, Any], correlation_id: Optional[str] = None
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.GRANT, user_id, "Credits granted", details, correlation_id
        )

    async def log_consumption(
        self, user_id: str, details: dict[str, Any], correlation_id: Optional[str] = None
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.CONSUME, user_id, "Credits consumed", details, correlation_id
        )

    async def log_expiry(
        self, user_id: str, details: dict[str, Any], correlation_id: Optional[str] = None
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.EXPIRE, user_id, "Credits expired", details, correlation_id
        )

    async def log_audit(
        self, user_id: str, message: str, details: dict[str, Any]
    ) -> LedgerEntry:
        return await self._log(LedgerEventType.AUDIT, user_id, message, details, None)

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.ERROR, user_id, message, details, correlation_id
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> LedgerEntry:
        entry = LedgerEntry(
            event_type=event_type,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )
        entry = await self._db.add_ledger_entry(entry)

        # The store copy is authoritative; the file mirror is best-effort.
        try:
            line = json.dumps(entry.model_dump(mode="json"))
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning(
                "Could not mirror ledger entry to %s: %s", self._file_path, exc
            )
        return entry
