import asyncio
import json
import uuid

import pytest
from fastapi import HTTPException
from sqlmodel import select

from app.core.security import Actor
from app.db.engine import async_session_factory
from app.models.document import ApprovalLineStep, ApprovalSubmission, Inspection, WorkPermit
from app.models.webhook_event import WebhookIdempotency
from app.services.document_approval_service import document_approval_service
from app.services.ref_handlers import ApprovalRefHandler, RefHandlerRegistry, ref_handler_registry
from app.services.webhook_receiver import WebhookReceiver, webhook_receiver
from app.services.webhook_signature import (
    EVENT_HEADER,
    IDEMPOTENCY_HEADER,
    SIGNATURE_HEADER,
    sign_payload,
)


def _company() -> str:
    return f"C{uuid.uuid4().hex[:6].upper()}"


async def _seed_inspection(company_id: str, inspection_id: str = "I250101001", status: str = "DRAFT") -> None:
    async with async_session_factory() as session:
        session.add(
            Inspection(
                company_id=company_id,
                inspection_id=inspection_id,
                name="Boiler #2 weekly check",
                plant_id="P0001",
                stage="PLN",
                status=status,
            )
        )
        await session.commit()


async def _get_inspection(company_id: str, inspection_id: str = "I250101001") -> Inspection:
    async with async_session_factory() as session:
        return await document_approval_service.get_document(session, company_id, "INSP", inspection_id)


async def _markers(company_id: str) -> list[WebhookIdempotency]:
    async with async_session_factory() as session:
        return (
            await session.exec(select(WebhookIdempotency).where(WebhookIdempotency.company_id == company_id))
        ).all()


async def _submit_inspection(company_id: str) -> str:
    submission = ApprovalSubmission(
        stage="pln",
        steps=[ApprovalLineStep(step_no=1, member_id="M0001", decision="APPRL")],
    )
    async with async_session_factory() as session:
        document, result = await document_approval_service.submit_approval(
            session, Actor(company_id, "M0100"), "INSP", "I250101001", submission
        )
        return result.approval.approval_id


def _body(company_id: str, event_type: str | None, key: str | None, **overrides) -> bytes:
    payload = {
        "companyId": company_id,
        "approvalId": "A250101001",
        "refEntity": "INSP",
        "refId": "I250101001",
        "refStage": "PLN",
        "status": "APPRV",
        "eventType": event_type,
        "idempotencyKey": key,
        "steps": [],
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


def _signed(body: bytes, **extra) -> dict[str, str]:
    headers = {SIGNATURE_HEADER: sign_payload(body)}
    headers.update(extra)
    return headers


async def _receive(body: bytes, headers: dict[str, str], ref_entity: str = "INSP"):
    async with async_session_factory() as session:
        return await webhook_receiver.receive(session, body, headers, ref_entity=ref_entity)


def _expect_http_error(coro, status_code: int) -> HTTPException:
    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(coro)
    assert exc_info.value.status_code == status_code
    return exc_info.value


def test_submit_moves_document_to_submitted():
    company_id = _company()
    asyncio.run(_seed_inspection(company_id))

    approval_id = asyncio.run(_submit_inspection(company_id))
    inspection = asyncio.run(_get_inspection(company_id))
    assert inspection.status == "SUBMT"
    assert inspection.stage == "PLN"
    assert inspection.approval_id == approval_id

    # Only DRAFT documents can be submitted.
    _expect_http_error(_submit_inspection(company_id), 409)


def test_submit_rejects_stage_not_served_by_module():
    company_id = _company()

    async def _seed_permit():
        async with async_session_factory() as session:
            session.add(WorkPermit(company_id=company_id, permit_id="P250101001", name="Hot work"))
            await session.commit()

    async def _submit_actual():
        async with async_session_factory() as session:
            return await document_approval_service.submit_approval(
                session,
                Actor(company_id, "M0100"),
                "WPER",
                "P250101001",
                ApprovalSubmission(stage="ACT", steps=[]),
            )

    asyncio.run(_seed_permit())
    _expect_http_error(_submit_actual(), 400)


def test_approved_event_applies_once():
    company_id = _company()
    asyncio.run(_seed_inspection(company_id, status="SUBMT"))
    key = f"{company_id}_INSP_I250101001_PLN_0A1B2C3D:APPROVED:1"
    body = _body(company_id, "APPROVED", key)

    assert asyncio.run(_receive(body, _signed(body))) == {"received": True}
    inspection = asyncio.run(_get_inspection(company_id))
    assert inspection.status == "APPRV"
    assert inspection.updated_by == "system"

    async def _reset_status():
        async with async_session_factory() as session:
            row = await document_approval_service.get_document(session, company_id, "INSP", "I250101001")
            row.status = "SUBMT"
            session.add(row)
            await session.commit()

    asyncio.run(_reset_status())
    assert asyncio.run(_receive(body, _signed(body))) == {"received": True, "duplicate": True}
    assert asyncio.run(_get_inspection(company_id)).status == "SUBMT"
    assert len(asyncio.run(_markers(company_id))) == 1


def test_signature_is_required_and_verified():
    company_id = _company()
    asyncio.run(_seed_inspection(company_id, status="SUBMT"))
    body = _body(company_id, "REJECTED", f"{company_id}_KEY:REJECTED:1")

    error = _expect_http_error(_receive(body, {}), 400)
    assert error.detail == "Missing signature"

    tampered = body.replace(b"REJECTED", b"APPROVED")
    error = _expect_http_error(_receive(tampered, _signed(body)), 401)
    assert error.detail == "Invalid signature"

    assert asyncio.run(_get_inspection(company_id)).status == "SUBMT"
    assert asyncio.run(_markers(company_id)) == []


def test_cancelled_event_returns_document_to_draft():
    company_id = _company()
    asyncio.run(_seed_inspection(company_id))
    asyncio.run(_submit_inspection(company_id))

    body = _body(company_id, None, None)
    headers = _signed(
        body,
        **{EVENT_HEADER: "CANCELLED", IDEMPOTENCY_HEADER: f"{company_id}_INSP_I250101001_PLN_FFFF0000:CANCELLED:0"},
    )
    assert asyncio.run(_receive(body, headers)) == {"received": True}

    inspection = asyncio.run(_get_inspection(company_id))
    assert inspection.status == "DRAFT"
    assert inspection.approval_id is None

    markers = asyncio.run(_markers(company_id))
    assert [marker.event_type for marker in markers] == ["CANCELLED"]


def test_submitted_event_records_marker_without_domain_change():
    company_id = _company()
    asyncio.run(_seed_inspection(company_id, status="SUBMT"))
    body = _body(company_id, "SUBMITTED", f"{company_id}_KEY:SUBMITTED:0")

    assert asyncio.run(_receive(body, _signed(body))) == {"received": True}
    assert asyncio.run(_get_inspection(company_id)).status == "SUBMT"
    assert len(asyncio.run(_markers(company_id))) == 1


def test_invalid_payloads_are_rejected():
    company_id = _company()
    asyncio.run(_seed_inspection(company_id, status="SUBMT"))

    malformed = b"{not json"
    _expect_http_error(_receive(malformed, _signed(malformed)), 400)

    missing_key = _body(company_id, "APPROVED", None)
    error = _expect_http_error(_receive(missing_key, _signed(missing_key)), 400)
    assert "idempotencyKey" in error.detail

    wrong_endpoint = _body(company_id, "APPROVED", f"{company_id}_KEY:APPROVED:1")
    _expect_http_error(_receive(wrong_endpoint, _signed(wrong_endpoint), ref_entity="WORK"), 400)

    unknown_event = _body(company_id, "ARCHIVED", f"{company_id}_KEY:ARCHIVED:1")
    _expect_http_error(_receive(unknown_event, _signed(unknown_event)), 400)

    unknown_document = _body(company_id, "APPROVED", f"{company_id}_KEY:APPROVED:9", refId="I999999999")
    _expect_http_error(_receive(unknown_document, _signed(unknown_document)), 404)

    assert asyncio.run(_markers(company_id)) == []


class _RacingInspectionHandler(ApprovalRefHandler):
    """Lets a concurrent delivery record the same key before this one commits."""

    def __init__(self, inner: ApprovalRefHandler, idempotency_key: str):
        self._inner = inner
        self._idempotency_key = idempotency_key

    def supports(self, ref_entity, ref_stage):
        return self._inner.supports(ref_entity, ref_stage)

    async def handle(self, session, action, ref_id, ref_stage, company_id):
        async with async_session_factory() as other:
            other.add(
                WebhookIdempotency(
                    company_id=company_id,
                    idempotency_key=self._idempotency_key,
                    event_type=action,
                )
            )
            await other.commit()
        await self._inner.handle(session, action, ref_id, ref_stage, company_id)


def test_concurrent_duplicate_loses_marker_race_and_rolls_back():
    company_id = _company()
    asyncio.run(_seed_inspection(company_id, status="SUBMT"))
    key = f"{company_id}_INSP_I250101001_PLN_5E5E5E5E:APPROVED:1"
    body = _body(company_id, "APPROVED", key)

    registry = RefHandlerRegistry()
    registry.register(_RacingInspectionHandler(ref_handler_registry.resolve("INSP", "PLN"), key))
    receiver = WebhookReceiver(registry=registry)

    async def _receive_racing():
        async with async_session_factory() as session:
            return await receiver.receive(session, body, _signed(body), ref_entity="INSP")

    assert asyncio.run(_receive_racing()) == {"received": True, "duplicate": True}
    assert asyncio.run(_get_inspection(company_id)).status == "SUBMT"
    assert len(asyncio.run(_markers(company_id))) == 1
