import json
import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.models.outbox import ApprovalEventType
from app.models.webhook_event import WebhookIdempotency
from app.services.ref_handlers import RefHandlerRegistry, ref_handler_registry
from app.services.webhook_signature import (
    EVENT_HEADER,
    IDEMPOTENCY_HEADER,
    SIGNATURE_HEADER,
    verify_signature,
)


logger = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


class WebhookReceiver:
    def __init__(self, registry: Optional[RefHandlerRegistry] = None, secret: Optional[str] = None):
        self._registry = registry or ref_handler_registry
        self._secret = secret

    def _parse_body(self, body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Malformed webhook payload: {e}")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object")
        return payload

    async def _already_processed(self, session: AsyncSession, company_id: str, idempotency_key: str) -> bool:
        existing = (
            await session.exec(
                select(WebhookIdempotency).where(
                    and_(
                        WebhookIdempotency.company_id == company_id,
                        WebhookIdempotency.idempotency_key == idempotency_key,
                    )
                )
            )
        ).first()
        return existing is not None

    async def receive(
        self,
        session: AsyncSession,
        body: bytes,
        headers: Mapping[str, str],
        ref_entity: str,
    ) -> dict[str, bool]:
        """Verify, deduplicate and apply one approval webhook for ``ref_entity``."""
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            logger.warning(f"Approval webhook for {ref_entity} missing signature")
            raise HTTPException(status_code=400, detail="Missing signature")
        if not verify_signature(body, signature, self._secret):
            logger.warning(f"Approval webhook for {ref_entity} has an invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        payload = self._parse_body(body)

        company_id = _text(payload.get("companyId"))
        ref_id = _text(payload.get("refId"))
        ref_stage = _text(payload.get("refStage"))
        event_type_raw = _text(payload.get("eventType")) or _text(headers.get(EVENT_HEADER))
        idempotency_key = _text(payload.get("idempotencyKey")) or _text(headers.get(IDEMPOTENCY_HEADER))

        if not company_id:
            raise HTTPException(status_code=400, detail="companyId is required")
        if not ref_id:
            raise HTTPException(status_code=400, detail="refId is required")
        if not event_type_raw:
            raise HTTPException(status_code=400, detail="eventType is required")
        if not idempotency_key:
            raise HTTPException(status_code=400, detail="idempotencyKey is required")

        payload_entity = _text(payload.get("refEntity"))
        if payload_entity and payload_entity != ref_entity:
            raise HTTPException(
                status_code=400,
                detail=f"Webhook for {payload_entity} sent to the {ref_entity} endpoint",
            )

        try:
            event_type = ApprovalEventType(event_type_raw.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unsupported event type: {event_type_raw}")

        if await self._already_processed(session, company_id, idempotency_key):
            logger.info(f"Skipping duplicate approval webhook: {company_id}/{idempotency_key}")
            return {"received": True, "duplicate": True}

        handler = self._registry.resolve(ref_entity, ref_stage)
        if handler is None:
            raise HTTPException(
                status_code=400,
                detail=f"No approval handler for {ref_entity} stage {ref_stage}",
            )

        await handler.handle(session, event_type.value, ref_id, ref_stage, company_id)
        session.add(
            WebhookIdempotency(
                company_id=company_id,
                idempotency_key=idempotency_key,
                event_type=event_type.value,
                processed_at=datetime.utcnow(),
            )
        )

        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info(f"Skipping duplicate approval webhook (race): {company_id}/{idempotency_key}")
            return {"received": True, "duplicate": True}

        logger.info(
            "Approval webhook applied: entity=%s ref_id=%s stage=%s event=%s",
            ref_entity,
            ref_id,
            ref_stage,
            event_type.value,
        )
        return {"received": True}


webhook_receiver = WebhookReceiver()
