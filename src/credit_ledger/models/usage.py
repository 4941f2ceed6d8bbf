from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Tuple

from pydantic import Field, field_validator

from .base import DBSerializableModel, ensure_utc, utcnow


class UsageRecord(DBSerializableModel):
    """
    One successful consumption. Written once, never updated.
    """

    collection_name: ClassVar[str] = "credit_usage_history"
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (("user_id", "created_at"),)

    id: Optional[str] = Field(default=None)
    user_id: str
    feature_used: str
    credits_spent: int = Field(gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)
