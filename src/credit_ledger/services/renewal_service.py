from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ..db.base import BaseLedgerStore
from ..errors import InvalidAmount
from ..models.grant import GrantSourceType
from ..models.results import GrantResult
from .grant_service import GrantService


logger = logging.getLogger(__name__)


def renewal_description(plan_name: str, period_key: str) -> str:
    return f"Plan renewal {plan_name} ({period_key})"


class RenewalService:
    """
    Allocates a plan's monthly credits once per billing period.

    Renewal triggers (payment webhooks, schedulers) may fire more than once;
    the grant description doubles as the deduplication key.
    """

    def __init__(self, db: BaseLedgerStore, grants: GrantService) -> None:
        self._db = db
        self._grants = grants

    async def allocate_plan_credits(
        self,
        user_id: str,
        plan_name: str,
        credit_limit: int,
        period_key: str,
        now: Optional[datetime] = None,
        correlation_id: str | None = None,
    ) -> Optional[GrantResult]:
        """
        Grant `credit_limit` monthly credits for `period_key` (e.g. "2025-03").
        Returns None when this period was already allocated.
        """
        if credit_limit <= 0:
            raise InvalidAmount(credit_limit)

        description = renewal_description(plan_name, period_key)
        existing = await self._db.find_grant_by_description(user_id, description)
        if existing is not None:
            logger.info(
                "Skipping renewal for user %s: %r already granted as %s",
                user_id,
                description,
                existing.id,
            )
            return None

        return await self._grants.grant(
            user_id=user_id,
            amount=credit_limit,
            source_type=GrantSourceType.MONTHLY,
            description=description,
            now=now,
            correlation_id=correlation_id,
        )
