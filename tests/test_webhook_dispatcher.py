import asyncio
import json
import uuid
from datetime import datetime, timedelta

import httpx
import pytest
from fastapi import HTTPException
from sqlmodel import select

from app.core.security import Actor
from app.db.engine import async_session_factory
from app.models.approval import ApprovalCreate, ApprovalStepCreate
from app.models.outbox import ApprovalOutbox, ApprovalWebhookLog, OutboxStatus
from app.services.approval_service import approval_service
from app.services.outbox_service import outbox_service
from app.services.webhook_dispatcher import WebhookDispatcher
from app.services.webhook_signature import (
    EVENT_HEADER,
    IDEMPOTENCY_HEADER,
    SIGNATURE_HEADER,
    verify_signature,
)


CALLBACK_BASE = "http://callback.test/"


def _company() -> str:
    return f"C{uuid.uuid4().hex[:6].upper()}"


async def _submit(company_id: str, callback_url: str = "/api/inspections/approvals/webhook") -> str:
    request = ApprovalCreate(
        title="Work order plan approval: Pump overhaul",
        ref_entity="WORK",
        ref_id="W250101001",
        ref_stage="PLN",
        callback_url=callback_url,
        idempotency_key=f"{company_id}_WORK_W250101001_PLN_{uuid.uuid4().hex[:8].upper()}",
        steps=[ApprovalStepCreate(step_no=1, member_id="M0001", decision="APPRL")],
    )
    async with async_session_factory() as session:
        result = await approval_service.create(session, Actor(company_id, "M0100"), request)
        return result.approval.approval_id


async def _outbox_rows(company_id: str) -> list[ApprovalOutbox]:
    async with async_session_factory() as session:
        return (
            await session.exec(
                select(ApprovalOutbox)
                .where(ApprovalOutbox.company_id == company_id)
                .order_by(ApprovalOutbox.id.asc())
            )
        ).all()


async def _attempt_logs(company_id: str) -> list[ApprovalWebhookLog]:
    async with async_session_factory() as session:
        return (
            await session.exec(
                select(ApprovalWebhookLog)
                .where(ApprovalWebhookLog.company_id == company_id)
                .order_by(ApprovalWebhookLog.id.asc())
            )
        ).all()


def _dispatcher(handler, **kwargs) -> WebhookDispatcher:
    kwargs.setdefault("max_attempts", 5)
    kwargs.setdefault("backoff_millis", 1000)
    return WebhookDispatcher(
        transport=httpx.MockTransport(handler),
        callback_base=CALLBACK_BASE,
        **kwargs,
    )


def _later(seconds: float = 1) -> datetime:
    return datetime.utcnow() + timedelta(seconds=seconds)


def test_resolve_callback_url_joins_with_single_slash():
    dispatcher = WebhookDispatcher(callback_base="http://cmms.local/")
    assert dispatcher.resolve_callback_url("/api/x/webhook") == "http://cmms.local/api/x/webhook"
    assert dispatcher.resolve_callback_url("api/x/webhook") == "http://cmms.local/api/x/webhook"
    assert dispatcher.resolve_callback_url("https://other.host/hook") == "https://other.host/hook"
    assert dispatcher.resolve_callback_url("HTTPS://Other.Host/hook") == "HTTPS://Other.Host/hook"
    assert dispatcher.resolve_callback_url("Http://other.host/hook") == "Http://other.host/hook"
    assert dispatcher.resolve_callback_url("  ") == ""

    no_slash = WebhookDispatcher(callback_base="http://cmms.local")
    assert no_slash.resolve_callback_url("api/x/webhook") == "http://cmms.local/api/x/webhook"


def test_success_marks_sent_with_signed_headers():
    company_id = _company()
    asyncio.run(_submit(company_id))
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"received": True})

    summary = asyncio.run(_dispatcher(handler).dispatch_pending_events(now=_later(), company_id=company_id))
    assert summary == {"processed": 1, "sent": 1, "failed": 0, "retried": 0}

    request = captured[0]
    assert str(request.url) == "http://callback.test/api/inspections/approvals/webhook"
    assert request.headers["content-type"] == "application/json"
    assert request.headers[EVENT_HEADER] == "SUBMITTED"
    assert request.headers[IDEMPOTENCY_HEADER].endswith(":SUBMITTED:0")
    assert verify_signature(request.content, request.headers[SIGNATURE_HEADER])
    assert json.loads(request.content)["companyId"] == company_id

    row = asyncio.run(_outbox_rows(company_id))[0]
    assert row.status == OutboxStatus.SENT
    assert row.last_error_message is None
    assert row.last_attempt_at is not None

    logs = asyncio.run(_attempt_logs(company_id))
    assert [(log.http_status, log.outbox_id) for log in logs] == [(200, row.id)]


def test_client_error_fails_without_retry():
    company_id = _company()
    asyncio.run(_submit(company_id))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, text="unknown document")

    summary = asyncio.run(_dispatcher(handler).dispatch_pending_events(now=_later(), company_id=company_id))
    assert summary["failed"] == 1

    row = asyncio.run(_outbox_rows(company_id))[0]
    assert row.status == OutboxStatus.FAILED
    assert row.retry_count == 0
    assert "422" in row.last_error_message
    assert asyncio.run(_attempt_logs(company_id))[0].response_body == "unknown document"


def test_server_errors_back_off_linearly_until_exhausted():
    company_id = _company()
    asyncio.run(_submit(company_id))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    dispatcher = _dispatcher(handler, max_attempts=5, backoff_millis=1000)
    now = _later()
    delays = []
    for expected_retry in (1, 2, 3):
        summary = asyncio.run(dispatcher.dispatch_pending_events(now=now, company_id=company_id))
        assert summary["retried"] == 1

        row = asyncio.run(_outbox_rows(company_id))[0]
        assert row.status == OutboxStatus.PENDING
        assert row.retry_count == expected_retry
        delays.append(row.next_attempt_at - now)

        # Not due yet: the row is left alone.
        idle = asyncio.run(dispatcher.dispatch_pending_events(now=now, company_id=company_id))
        assert idle["processed"] == 0
        now = row.next_attempt_at

    assert delays == [timedelta(seconds=1), timedelta(seconds=2), timedelta(seconds=3)]

    exhausted = _dispatcher(handler, max_attempts=4, backoff_millis=1000)
    summary = asyncio.run(exhausted.dispatch_pending_events(now=now, company_id=company_id))
    assert summary["failed"] == 1

    row = asyncio.run(_outbox_rows(company_id))[0]
    assert row.status == OutboxStatus.FAILED
    assert row.retry_count == 4
    assert row.next_attempt_at is None
    assert len(asyncio.run(_attempt_logs(company_id))) == 4


def test_network_error_is_retryable():
    company_id = _company()
    asyncio.run(_submit(company_id))

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    summary = asyncio.run(_dispatcher(handler).dispatch_pending_events(now=_later(), company_id=company_id))
    assert summary["retried"] == 1

    row = asyncio.run(_outbox_rows(company_id))[0]
    assert row.status == OutboxStatus.PENDING
    assert row.retry_count == 1
    assert "ConnectError" in row.last_error_message

    log = asyncio.run(_attempt_logs(company_id))[0]
    assert log.http_status is None
    assert "connection refused" in log.error_message


def test_empty_callback_url_fails_immediately():
    company_id = _company()
    asyncio.run(_submit(company_id))

    async def _blank_callback():
        async with async_session_factory() as session:
            row = (
                await session.exec(select(ApprovalOutbox).where(ApprovalOutbox.company_id == company_id))
            ).first()
            row.callback_url = ""
            session.add(row)
            await session.commit()

    asyncio.run(_blank_callback())
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    asyncio.run(_dispatcher(handler).dispatch_pending_events(now=_later(), company_id=company_id))
    row = asyncio.run(_outbox_rows(company_id))[0]
    assert row.status == OutboxStatus.FAILED
    assert calls == []


def test_monitoring_reports_and_requeues_failed_events():
    company_id = _company()
    asyncio.run(_submit(company_id))
    asyncio.run(_submit(company_id))

    def reject(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="bad request")

    dispatcher = _dispatcher(reject)
    asyncio.run(dispatcher.dispatch_pending_events(now=_later(), company_id=company_id, limit=1))

    async def _status():
        async with async_session_factory() as session:
            status = await outbox_service.get_outbox_status(session, company_id=company_id)
            failed = await outbox_service.get_failed_events(session, limit=5, company_id=company_id)
            return status, failed

    status, failed = asyncio.run(_status())
    assert status["pending"] == 1
    assert status["failed"] == 1
    assert status["oldest_pending_created_at"] is not None
    assert len(failed) == 1

    async def _retry(outbox_id: int):
        async with async_session_factory() as session:
            return await outbox_service.retry(session, outbox_id, company_id=company_id)

    requeued = asyncio.run(_retry(failed[0].id))
    assert requeued.status == OutboxStatus.PENDING
    assert requeued.retry_count == 0
    assert requeued.last_error_message is None
    assert requeued.last_attempt_at is None

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(_retry(999999999))
    assert exc_info.value.status_code == 404

    def accept(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    summary = asyncio.run(_dispatcher(accept).dispatch_pending_events(now=_later(), company_id=company_id))
    assert summary["sent"] == 2
    status, failed = asyncio.run(_status())
    assert status == {"pending": 0, "failed": 0, "oldest_pending_created_at": None}
    assert failed == []
