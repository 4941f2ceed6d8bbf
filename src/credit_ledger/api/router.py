from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from ..bootstrap import create_credit_service
from ..errors import (
    CreditLedgerError,
    InsufficientCredits,
    InvalidAmount,
    InvalidSourceType,
    LedgerDesync,
    TransactionConflict,
    UserAlreadyExists,
    UserNotFound,
)
from ..models.api_models import (
    ConsumeCreditsRequest,
    CreditBalanceResponse,
    ExpiredSummaryResponse,
    ExpireRequest,
    GrantCreditsRequest,
    GrantListResponse,
    GrantResponse,
    ReconciliationResponse,
    UsageHistoryResponse,
    UsageRecordResponse,
)
from ..services.credit_service import CreditService


router = APIRouter(prefix="/credits", tags=["credits"])

_STATUS_BY_ERROR = {
    UserNotFound: status.HTTP_404_NOT_FOUND,
    InvalidAmount: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidSourceType: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InsufficientCredits: status.HTTP_402_PAYMENT_REQUIRED,
    TransactionConflict: status.HTTP_409_CONFLICT,
    UserAlreadyExists: status.HTTP_409_CONFLICT,
    LedgerDesync: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_credit_service: Optional[CreditService] = None


def get_credit_service() -> CreditService:
    global _credit_service
    if _credit_service is None:
        _credit_service = create_credit_service()
    return _credit_service


def _http_error(exc: CreditLedgerError) -> HTTPException:
    code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, LedgerDesync):
        # Internal details stay in the logs
        detail = {"message": "Credit ledger is inconsistent.", "code": exc.code}
    else:
        detail = {"message": str(exc), "code": exc.code, **exc.details()}
    return HTTPException(status_code=code, detail=detail)


class RegisterUserRequest(BaseModel):
    user_id: str
    external_user_ref: str | None = None


@router.post("/users", response_model=CreditBalanceResponse, status_code=201)
async def register_user(
    payload: RegisterUserRequest,
    service: CreditService = Depends(get_credit_service),
) -> CreditBalanceResponse:
    try:
        user = await service.register_user(payload.user_id, payload.external_user_ref)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return CreditBalanceResponse(user_id=payload.user_id, credits=user.credits_balance)


@router.post("/grant", response_model=CreditBalanceResponse)
async def grant_credits(
    payload: GrantCreditsRequest,
    service: CreditService = Depends(get_credit_service),
) -> CreditBalanceResponse:
    try:
        result = await service.grant(
            user_id=payload.user_id,
            amount=payload.amount,
            source_type=payload.source_type,
            description=payload.description,
        )
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return CreditBalanceResponse(user_id=payload.user_id, credits=result.balance)


@router.post("/consume", response_model=CreditBalanceResponse)
async def consume_credits(
    payload: ConsumeCreditsRequest,
    service: CreditService = Depends(get_credit_service),
) -> CreditBalanceResponse:
    try:
        result = await service.consume(
            user_id=payload.user_id,
            cost=payload.cost,
            feature=payload.feature,
            metadata=payload.metadata,
        )
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return CreditBalanceResponse(user_id=payload.user_id, credits=result.balance)


@router.get("/balance/{user_id}", response_model=CreditBalanceResponse)
async def get_balance(
    user_id: str, service: CreditService = Depends(get_credit_service)
) -> CreditBalanceResponse:
    try:
        balance = await service.get_balance(user_id)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return CreditBalanceResponse(user_id=user_id, credits=balance)


@router.get("/grants/{user_id}", response_model=GrantListResponse)
async def list_grants(
    user_id: str, service: CreditService = Depends(get_credit_service)
) -> GrantListResponse:
    try:
        grants = await service.get_grants(user_id)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return GrantListResponse(
        user_id=user_id,
        grants=[
            GrantResponse(
                id=g.id or "",
                amount=g.amount,
                remaining_amount=g.remaining_amount,
                source_type=g.source_type,
                description=g.description,
                expires_at=g.expires_at,
                created_at=g.created_at,
            )
            for g in grants
        ],
    )


@router.get("/usage/{user_id}", response_model=UsageHistoryResponse)
async def usage_history(
    user_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    service: CreditService = Depends(get_credit_service),
) -> UsageHistoryResponse:
    try:
        records = await service.get_usage_history(user_id, limit=limit)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return UsageHistoryResponse(
        user_id=user_id,
        records=[
            UsageRecordResponse(
                id=r.id or "",
                feature_used=r.feature_used,
                credits_spent=r.credits_spent,
                metadata=r.metadata,
                created_at=r.created_at,
            )
            for r in records
        ],
    )


@router.post("/expire", response_model=ExpiredSummaryResponse)
async def expire_stale_grants(
    payload: ExpireRequest,
    service: CreditService = Depends(get_credit_service),
) -> ExpiredSummaryResponse:
    summary = await service.expire_stale_grants(payload.now)
    return ExpiredSummaryResponse(**summary.model_dump())


@router.get("/audit/{user_id}", response_model=ReconciliationResponse)
async def audit_user(
    user_id: str, service: CreditService = Depends(get_credit_service)
) -> ReconciliationResponse:
    try:
        report = await service.audit_user(user_id)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return ReconciliationResponse(
        user_id=report.user_id,
        cached_balance=report.cached_balance,
        ledger_balance=report.ledger_balance,
        drift=report.drift,
        live_grants=report.live_grants,
    )
