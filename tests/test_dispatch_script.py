import asyncio
import runpy
import uuid
from pathlib import Path

from app.services.webhook_dispatcher import webhook_dispatcher

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "dispatch_approval_webhooks.py"


def test_run_totals_rounds_and_stops_when_queue_drains(monkeypatch):
    company_id = f"C{uuid.uuid4().hex[:6].upper()}"
    script = runpy.run_path(str(SCRIPT_PATH))
    cycles = [
        {"processed": 3, "sent": 2, "failed": 0, "retried": 1},
        {"processed": 1, "sent": 0, "failed": 1, "retried": 0},
        {"processed": 0, "sent": 0, "failed": 0, "retried": 0},
    ]
    calls = []

    async def _fake_dispatch(now=None, company_id=None, limit=None):
        calls.append((company_id, limit))
        return cycles[len(calls) - 1]

    monkeypatch.setattr(webhook_dispatcher, "dispatch_pending_events", _fake_dispatch)

    summary = asyncio.run(script["_run"](company_id=company_id, limit=25, rounds=5))

    assert calls == [(company_id, 25)] * 3
    assert summary["processed_total"] == 4
    assert summary["sent_total"] == 2
    assert summary["failed_total"] == 1
    assert summary["retried_total"] == 1
    assert [run["round"] for run in summary["runs"]] == [1, 2, 3]
    assert summary["outbox"]["pending"] == 0
