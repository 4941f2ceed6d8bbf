from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class UserAccount(DBSerializableModel):
    """
    The credit system's view of a user: identity plus the running balance.

    `credits_balance` is a denormalized cache of the sum of remaining grant
    amounts. Only the ledger services write it, always inside the same store
    transaction as the grants that back it.
    """

    collection_name: ClassVar[str] = "credit_users"

    id: Optional[str] = Field(default=None)
    external_user_ref: Optional[str] = Field(
        default=None,
        description="Optional reference to the host application's user identifier.",
    )
    credits_balance: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
