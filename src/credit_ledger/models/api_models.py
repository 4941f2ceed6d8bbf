from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .grant import GrantSourceType


class GrantCreditsRequest(BaseModel):
    user_id: str
    amount: int
    source_type: GrantSourceType = GrantSourceType.PURCHASED
    description: str = ""


class ConsumeCreditsRequest(BaseModel):
    user_id: str
    cost: int
    feature: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits: int


class GrantResponse(BaseModel):
    id: str
    amount: int
    remaining_amount: int
    source_type: GrantSourceType
    description: str
    expires_at: Optional[datetime] = None
    created_at: datetime


class UsageRecordResponse(BaseModel):
    id: str
    feature_used: str
    credits_spent: int
    metadata: Dict[str, Any]
    created_at: datetime


class ExpireRequest(BaseModel):
    now: Optional[datetime] = Field(
        default=None, description="Sweep cut-off; defaults to the current time."
    )


class ExpiredSummaryResponse(BaseModel):
    grants_expired: int
    credits_forfeited: int
    users_affected: int


class ReconciliationResponse(BaseModel):
    user_id: str
    cached_balance: int
    ledger_balance: int
    drift: int
    live_grants: int


class GrantListResponse(BaseModel):
    user_id: str
    grants: List[GrantResponse]


class UsageHistoryResponse(BaseModel):
    user_id: str
    records: List[UsageRecordResponse]
