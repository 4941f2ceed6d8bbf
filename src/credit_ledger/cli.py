from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
from typing import List, Optional

from .bootstrap import create_credit_service
from .config import configure_logging, settings
from .models.base import ensure_utc


async def run_expiry(now: Optional[datetime] = None) -> int:
    service = create_credit_service()
    await service.prepare_store()
    summary = await service.expire_stale_grants(now)
    print(
        f"expired {summary.grants_expired} grants, "
        f"forfeited {summary.credits_forfeited} credits "
        f"from {summary.users_affected} users"
    )
    return 0


async def run_audit(user_id: Optional[str] = None) -> int:
    service = create_credit_service()
    await service.prepare_store()
    if user_id:
        reports = [await service.audit_user(user_id)]
    else:
        reports = await service.audit_all()

    drifted = [r for r in reports if not r.in_sync]
    for report in reports:
        state = "ok" if report.in_sync else f"DRIFT {report.drift:+d}"
        print(
            f"{report.user_id}: cached {report.cached_balance}, "
            f"ledger {report.ledger_balance} ({state})"
        )
    if not reports:
        print("no drifted balances")
    return 1 if drifted else 0


def _parse_timestamp(value: str) -> datetime:
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credit-ledger", description="Credit ledger maintenance tasks"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    expire = sub.add_parser("expire", help="Forfeit credits left on expired grants")
    expire.add_argument(
        "--now",
        type=_parse_timestamp,
        default=None,
        help="Sweep cut-off as ISO-8601 (default: current time, UTC)",
    )

    audit = sub.add_parser("audit", help="Compare cached balances with their grants")
    audit.add_argument("--user", default=None, help="Audit a single user id")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings)

    if args.command == "expire":
        return asyncio.run(run_expiry(args.now))
    return asyncio.run(run_audit(args.user))


if __name__ == "__main__":
    raise SystemExit(main())
