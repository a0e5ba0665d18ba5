#!/usr/bin/env python3
"""
Deliver pending approval outbox events to their callback URLs.

Examples:
    python3 scripts/dispatch_approval_webhooks.py
    python3 scripts/dispatch_approval_webhooks.py --company-id C0001
    python3 scripts/dispatch_approval_webhooks.py --limit 200 --rounds 3
    python3 scripts/dispatch_approval_webhooks.py --status
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Settings are read at import time, so .env must be loaded first.
load_dotenv(ROOT / ".env")

from app.core.config import settings
from app.db.engine import get_session
from app.services.outbox_service import outbox_service
from app.services.webhook_dispatcher import webhook_dispatcher


async def _outbox_status(company_id: str | None) -> dict:
    async for session in get_session():
        status = await outbox_service.get_outbox_status(session, company_id=company_id)
        oldest = status.get("oldest_pending_created_at")
        status["oldest_pending_created_at"] = oldest.isoformat() if oldest else None
        return status
    return {}


async def _run(company_id: str | None, limit: int, rounds: int) -> dict:
    summary = {
        "company_id": company_id,
        "limit": limit,
        "rounds": rounds,
        "processed_total": 0,
        "sent_total": 0,
        "failed_total": 0,
        "retried_total": 0,
        "runs": [],
    }

    for idx in range(rounds):
        result = await webhook_dispatcher.dispatch_pending_events(company_id=company_id, limit=limit)
        summary["processed_total"] += int(result.get("processed", 0))
        summary["sent_total"] += int(result.get("sent", 0))
        summary["failed_total"] += int(result.get("failed", 0))
        summary["retried_total"] += int(result.get("retried", 0))
        summary["runs"].append({"round": idx + 1, **result})

        if not result.get("processed"):
            break

    summary["outbox"] = await _outbox_status(company_id)
    return summary


def main() -> None:
    parser = argparse.ArgumentParser(description="Dispatch pending approval webhook events.")
    parser.add_argument("--company-id", default=None, help="Dispatch only one company's events")
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.WEBHOOK_BATCH_SIZE,
        help="Max due events to deliver in each round",
    )
    parser.add_argument("--rounds", type=int, default=1, help="Number of dispatch rounds to run")
    parser.add_argument("--status", action="store_true", help="Only print the outbox status")
    args = parser.parse_args()

    if args.status:
        result = asyncio.run(_outbox_status(args.company_id))
    else:
        result = asyncio.run(
            _run(
                company_id=args.company_id,
                limit=max(1, args.limit),
                rounds=max(1, args.rounds),
            )
        )
    print(json.dumps(result, ensure_ascii=True, indent=2))


if __name__ == "__main__":
    main()
