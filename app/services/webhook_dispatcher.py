import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.db.engine import async_session_factory
from app.models.outbox import ApprovalOutbox, ApprovalWebhookLog, OutboxStatus
from app.services.webhook_signature import (
    EVENT_HEADER,
    IDEMPOTENCY_HEADER,
    SIGNATURE_HEADER,
    sign_payload,
)


logger = logging.getLogger(__name__)

RESPONSE_BODY_MAX_LENGTH = 2000
ERROR_MESSAGE_MAX_LENGTH = 500


def _clip(value: Optional[str], max_len: int) -> Optional[str]:
    if value is None:
        return None
    return value[:max_len]


class WebhookDispatcher:
    """Polls the approval outbox and delivers each due event to its callback URL.

    Every row is delivered and committed on its own, so one failing callback
    never holds back the rest of the batch. The HTTP call happens before the row
    is modified, which keeps the write transaction short.
    """

    def __init__(
        self,
        session_factory=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_attempts: Optional[int] = None,
        backoff_millis: Optional[int] = None,
        batch_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        callback_base: Optional[str] = None,
        secret: Optional[str] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self.transport = transport
        self.max_attempts = max_attempts if max_attempts is not None else settings.WEBHOOK_MAX_ATTEMPTS
        self.backoff_millis = backoff_millis if backoff_millis is not None else settings.WEBHOOK_BACKOFF_MILLIS
        self.batch_size = batch_size or settings.WEBHOOK_BATCH_SIZE
        self.timeout_seconds = timeout_seconds or settings.WEBHOOK_HTTP_TIMEOUT_SECONDS
        self.callback_base = callback_base if callback_base is not None else settings.WEBHOOK_CALLBACK_BASE
        self.secret = secret
        self._lock = asyncio.Lock()

    def resolve_callback_url(self, callback_url: Optional[str]) -> str:
        url = (callback_url or "").strip()
        if not url:
            return ""
        if url.lower().startswith(("http://", "https://")):
            return url
        base = (self.callback_base or "").rstrip("/")
        return f"{base}/{url.lstrip('/')}"

    def build_headers(self, row: ApprovalOutbox, body: bytes) -> dict[str, str]:
        event_type = row.event_type.value if hasattr(row.event_type, "value") else str(row.event_type)
        return {
            "Content-Type": "application/json",
            EVENT_HEADER: event_type,
            IDEMPOTENCY_HEADER: row.idempotency_key or "",
            SIGNATURE_HEADER: sign_payload(body, self.secret),
        }

    def retry_delay(self, retry_count: int) -> timedelta:
        return timedelta(milliseconds=self.backoff_millis * max(1, retry_count))

    def mark_as_sent(self, row: ApprovalOutbox, now: datetime) -> None:
        row.status = OutboxStatus.SENT
        row.last_error_message = None
        row.last_attempt_at = now
        row.next_attempt_at = None
        row.updated_at = now

    def mark_as_failed(self, row: ApprovalOutbox, error: str, now: datetime) -> None:
        row.status = OutboxStatus.FAILED
        row.last_error_message = _clip(error, ERROR_MESSAGE_MAX_LENGTH)
        row.last_attempt_at = now
        row.next_attempt_at = None
        row.updated_at = now

    def mark_for_retry(self, row: ApprovalOutbox, error: str, now: datetime) -> None:
        attempts = int(row.retry_count or 0) + 1
        row.retry_count = attempts
        row.last_error_message = _clip(error, ERROR_MESSAGE_MAX_LENGTH)
        row.last_attempt_at = now
        row.updated_at = now

        if attempts >= self.max_attempts:
            row.status = OutboxStatus.FAILED
            row.next_attempt_at = None
        else:
            row.status = OutboxStatus.PENDING
            row.next_attempt_at = now + self.retry_delay(attempts)

    def _attempt_log(
        self,
        row: ApprovalOutbox,
        url: str,
        http_status: Optional[int] = None,
        response_body: Optional[str] = None,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalWebhookLog:
        return ApprovalWebhookLog(
            outbox_id=row.id,
            company_id=row.company_id,
            approval_id=row.approval_id,
            webhook_url=url,
            http_status=http_status,
            response_body=_clip(response_body, RESPONSE_BODY_MAX_LENGTH),
            error_message=_clip(error_message, ERROR_MESSAGE_MAX_LENGTH),
            created_at=now or datetime.utcnow(),
        )

    async def process_event(
        self,
        session: AsyncSession,
        client: httpx.AsyncClient,
        row: ApprovalOutbox,
        now: Optional[datetime] = None,
    ) -> OutboxStatus:
        now = now or datetime.utcnow()
        url = self.resolve_callback_url(row.callback_url)

        if not url:
            self.mark_as_failed(row, "Callback URL is empty", now)
            session.add(row)
            session.add(self._attempt_log(row, "", error_message="Callback URL is empty", now=now))
            await session.commit()
            logger.warning(f"Outbox event {row.id} has no callback URL; marked FAILED")
            return row.status

        body = (row.payload or "").encode("utf-8")
        headers = self.build_headers(row, body)

        try:
            response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
            self.mark_for_retry(row, error, now)
            session.add(row)
            session.add(self._attempt_log(row, url, error_message=error, now=now))
            await session.commit()
            logger.warning(
                "Webhook delivery error: outbox_id=%s url=%s retry=%s status=%s error=%s",
                row.id,
                url,
                row.retry_count,
                row.status.value,
                error,
            )
            return row.status

        status_code = response.status_code
        response_text = response.text
        if 200 <= status_code < 300:
            self.mark_as_sent(row, now)
        elif 400 <= status_code < 500:
            self.mark_as_failed(row, f"HTTP {status_code}: {response_text}", now)
        else:
            self.mark_for_retry(row, f"HTTP {status_code}: {response_text}", now)

        session.add(row)
        session.add(
            self._attempt_log(
                row,
                url,
                http_status=status_code,
                response_body=response_text,
                error_message=None if row.status == OutboxStatus.SENT else row.last_error_message,
                now=now,
            )
        )
        await session.commit()

        logger.info(
            "Webhook delivered: outbox_id=%s event=%s http_status=%s status=%s",
            row.id,
            row.event_type.value,
            status_code,
            row.status.value,
        )
        return row.status

    async def _load_due_ids(
        self,
        session: AsyncSession,
        now: datetime,
        company_id: Optional[str],
        limit: int,
    ) -> list[int]:
        criteria = [
            ApprovalOutbox.status == OutboxStatus.PENDING,
            ApprovalOutbox.next_attempt_at <= now,
        ]
        if company_id:
            criteria.append(ApprovalOutbox.company_id == company_id)

        rows = (
            await session.exec(
                select(ApprovalOutbox.id)
                .where(and_(*criteria))
                .order_by(ApprovalOutbox.created_at.asc(), ApprovalOutbox.id.asc())
                .limit(limit)
            )
        ).all()
        return [int(row_id) for row_id in rows if row_id is not None]

    async def dispatch_pending_events(
        self,
        now: Optional[datetime] = None,
        company_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> dict[str, int]:
        summary = {
            "processed": 0,
            "sent": 0,
            "failed": 0,
            "retried": 0,
        }
        if self._lock.locked():
            logger.debug("Webhook dispatch cycle already running; skipping")
            return summary

        async with self._lock:
            cycle_now = now or datetime.utcnow()
            batch_limit = limit or self.batch_size

            async with self._session_factory() as session:
                due_ids = await self._load_due_ids(session, cycle_now, company_id, batch_limit)
                if not due_ids:
                    return summary

                async with httpx.AsyncClient(
                    transport=self.transport,
                    timeout=self.timeout_seconds,
                ) as client:
                    for row_id in due_ids:
                        row = await session.get(ApprovalOutbox, row_id)
                        if row is None or row.status != OutboxStatus.PENDING:
                            continue

                        summary["processed"] += 1
                        try:
                            status = await self.process_event(session, client, row, cycle_now)
                        except Exception as e:
                            await session.rollback()
                            logger.error(f"Failed to dispatch outbox event {row_id}: {e}")
                            try:
                                retry_row = await session.get(ApprovalOutbox, row_id)
                                if retry_row is None:
                                    continue
                                self.mark_for_retry(retry_row, str(e), cycle_now)
                                session.add(retry_row)
                                await session.commit()
                                status = retry_row.status
                            except Exception as inner_error:
                                await session.rollback()
                                logger.error(f"Failed to mark retry for outbox event {row_id}: {inner_error}")
                                continue

                        if status == OutboxStatus.SENT:
                            summary["sent"] += 1
                        elif status == OutboxStatus.FAILED:
                            summary["failed"] += 1
                        else:
                            summary["retried"] += 1

        if summary["processed"]:
            logger.info(f"Webhook dispatch cycle: {summary}")
        return summary

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        interval = (
            interval_seconds
            if interval_seconds is not None
            else settings.WEBHOOK_DISPATCH_DELAY_MILLIS / 1000.0
        )
        logger.info(f"Webhook dispatcher started (interval={interval}s, batch={self.batch_size})")
        while True:
            try:
                await self.dispatch_pending_events()
            except Exception as e:
                logger.error(f"Webhook dispatch cycle failed: {e}")
            await asyncio.sleep(interval)


webhook_dispatcher = WebhookDispatcher()
