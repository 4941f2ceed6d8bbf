from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional, Tuple

from pydantic import Field, field_validator, model_validator

from .base import DBSerializableModel, ensure_utc, utcnow


class GrantSourceType(str, Enum):
    """
    Where a batch of credits came from. Closed set; new kinds are added here.
    """

    MONTHLY = "monthly"
    PURCHASED = "purchased"


class CreditGrant(DBSerializableModel):
    """
    One ledger entry: a batch of credits issued to a user from a single source.

    `amount` and `created_at` never change after insert. `remaining_amount`
    only ever decreases, through consumption or expiry. Exhausted grants are
    kept as history.
    """

    collection_name: ClassVar[str] = "credit_grants"
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (
        ("user_id", "remaining_amount"),
        ("expires_at", "remaining_amount"),
        ("user_id", "description"),
    )

    id: Optional[str] = Field(default=None)
    user_id: str
    amount: int = Field(gt=0)
    remaining_amount: int = Field(ge=0)
    source_type: GrantSourceType
    description: str = ""
    expires_at: Optional[datetime] = Field(
        default=None, description="Null means the grant never expires."
    )
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("expires_at", "created_at")
    @classmethod
    def _normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_remaining(self) -> "CreditGrant":
        if self.remaining_amount > self.amount:
            raise ValueError("remaining_amount cannot exceed amount")
        return self

    @property
    def is_live(self) -> bool:
        return self.remaining_amount > 0

    def is_expired(self, as_of: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < as_of
