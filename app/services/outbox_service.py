import json
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from fastapi import HTTPException
from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.models.approval import Approval, ApprovalStep
from app.models.outbox import ApprovalEventType, ApprovalOutbox, OutboxStatus


logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class OutboxService:
    def event_idempotency_key(
        self,
        approval: Approval,
        event_type: ApprovalEventType,
        steps: Sequence[ApprovalStep],
    ) -> str:
        # Each notifying transition decides at most one step, so the decided
        # count makes the key distinct per transition and stable on replay.
        decided = len([step for step in steps if step.decided_at is not None])
        return f"{approval.idempotency_key}:{event_type.value}:{decided}"

    def build_payload(
        self,
        approval: Approval,
        steps: Sequence[ApprovalStep],
        event_type: ApprovalEventType,
        idempotency_key: str,
        occurred_at: datetime,
        actor_id: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> dict[str, Any]:
        return {
            "companyId": approval.company_id,
            "approvalId": approval.approval_id,
            "refEntity": approval.ref_entity,
            "refId": approval.ref_id,
            "refStage": approval.ref_stage,
            "status": approval.status,
            "eventType": event_type.value,
            "occurredAt": _iso(occurred_at),
            "actorId": actor_id,
            "comment": comment,
            "callbackUrl": approval.callback_url,
            "idempotencyKey": idempotency_key,
            "steps": [
                {
                    "stepNo": step.step_no,
                    "memberId": step.member_id,
                    "decision": step.decision,
                    "result": step.result,
                    "decidedAt": _iso(step.decided_at),
                    "comment": step.comment,
                }
                for step in sorted(steps, key=lambda s: s.step_no)
            ],
        }

    def enqueue_event(
        self,
        session: AsyncSession,
        approval: Approval,
        steps: Sequence[ApprovalStep],
        event_type: ApprovalEventType,
        actor_id: Optional[str] = None,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalOutbox:
        """Stage one delivery intent in the caller's transaction.

        The row is only added to ``session``; it is committed together with the
        approval change that produced it.
        """
        now = now or datetime.utcnow()
        idempotency_key = self.event_idempotency_key(approval, event_type, steps)
        payload = self.build_payload(
            approval=approval,
            steps=steps,
            event_type=event_type,
            idempotency_key=idempotency_key,
            occurred_at=now,
            actor_id=actor_id,
            comment=comment,
        )
        row = ApprovalOutbox(
            company_id=approval.company_id,
            approval_id=approval.approval_id,
            callback_url=approval.callback_url,
            idempotency_key=idempotency_key,
            event_type=event_type,
            status=OutboxStatus.PENDING,
            payload=json.dumps(payload, ensure_ascii=True),
            retry_count=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        logger.info(
            "Outbox event staged: approval_id=%s event=%s key=%s",
            approval.approval_id,
            event_type.value,
            idempotency_key,
        )
        return row

    async def list_events(
        self,
        session: AsyncSession,
        company_id: str,
        approval_id: str,
    ) -> list[ApprovalOutbox]:
        result = await session.exec(
            select(ApprovalOutbox)
            .where(
                ApprovalOutbox.company_id == company_id,
                ApprovalOutbox.approval_id == approval_id,
            )
            .order_by(ApprovalOutbox.id.asc())
        )
        return result.all()

    async def get_outbox_status(
        self,
        session: AsyncSession,
        company_id: Optional[str] = None,
    ) -> dict[str, Any]:
        async def _count(status: OutboxStatus) -> int:
            query = select(func.count()).select_from(ApprovalOutbox).where(ApprovalOutbox.status == status)
            if company_id:
                query = query.where(ApprovalOutbox.company_id == company_id)
            return int((await session.exec(query)).one())

        oldest_query = select(ApprovalOutbox.created_at).where(ApprovalOutbox.status == OutboxStatus.PENDING)
        if company_id:
            oldest_query = oldest_query.where(ApprovalOutbox.company_id == company_id)
        oldest_pending = (
            await session.exec(oldest_query.order_by(ApprovalOutbox.created_at.asc()).limit(1))
        ).first()

        return {
            "pending": await _count(OutboxStatus.PENDING),
            "failed": await _count(OutboxStatus.FAILED),
            "oldest_pending_created_at": oldest_pending,
        }

    async def get_failed_events(
        self,
        session: AsyncSession,
        limit: int = 20,
        company_id: Optional[str] = None,
    ) -> list[ApprovalOutbox]:
        bounded_limit = min(max(limit, 1), 200)
        query = select(ApprovalOutbox).where(ApprovalOutbox.status == OutboxStatus.FAILED)
        if company_id:
            query = query.where(ApprovalOutbox.company_id == company_id)
        query = query.order_by(ApprovalOutbox.updated_at.desc(), ApprovalOutbox.id.desc()).limit(bounded_limit)
        result = await session.exec(query)
        return result.all()

    async def retry(
        self,
        session: AsyncSession,
        outbox_id: int,
        company_id: Optional[str] = None,
    ) -> ApprovalOutbox:
        """Requeue an event; the only way out of FAILED."""
        row = await session.get(ApprovalOutbox, outbox_id)
        if row is None or (company_id and row.company_id != company_id):
            raise HTTPException(status_code=404, detail=f"Outbox event not found: {outbox_id}")

        now = datetime.utcnow()
        row.status = OutboxStatus.PENDING
        row.retry_count = 0
        row.last_error_message = None
        row.last_attempt_at = None
        row.next_attempt_at = now
        row.updated_at = now
        session.add(row)
        await session.commit()
        await session.refresh(row)
        logger.info(f"Outbox event requeued: outbox_id={outbox_id}")
        return row


outbox_service = OutboxService()
