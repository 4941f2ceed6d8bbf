from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..db.base import BaseLedgerStore
from ..models.base import utcnow
from ..models.usage import UsageRecord


class UsageRecorder:
    """Append-only log of consumptions, read back by reporting code."""

    def __init__(self, db: BaseLedgerStore, history_limit: int = 50) -> None:
        self._db = db
        self._history_limit = history_limit

    async def record(
        self,
        user_id: str,
        feature: str,
        credits_spent: int,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> UsageRecord:
        # Joins the caller's transaction when there is one
        record = UsageRecord(
            user_id=user_id,
            feature_used=feature,
            credits_spent=credits_spent,
            metadata=dict(metadata or {}),
            created_at=created_at or utcnow(),
        )
        return await self._db.add_usage_record(record)

    async def history(self, user_id: str, limit: Optional[int] = None) -> List[UsageRecord]:
        return await self._db.get_usage_records(
            user_id, limit=self._history_limit if limit is None else limit
        )
