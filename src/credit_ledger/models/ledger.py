from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Tuple

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerEventType(str, Enum):
    GRANT = "grant"
    CONSUME = "consume"
    EXPIRE = "expire"
    AUDIT = "audit"
    ERROR = "error"


class LedgerEntry(DBSerializableModel):
    """
    Audit trail entry persisted to the store and mirrored to the JSONL file.
    """

    collection_name: ClassVar[str] = "credit_ledger_events"
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (("user_id", "created_at"), ("event_type",))

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
