"""
FastAPI application exposing the credit ledger.

Run:
  uvicorn credit_ledger.api.app:app --reload

Without CREDIT_MONGO_URI the app runs on the in-memory store, which is
only suitable for local development.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from ..config import CreditLedgerSettings, configure_logging, settings
from .router import get_credit_service, router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    provider = app.dependency_overrides.get(get_credit_service, get_credit_service)
    await provider().prepare_store()
    yield


def create_app(config: CreditLedgerSettings | None = None) -> FastAPI:
    config = config or settings
    configure_logging(config)
    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()
