import logging
import re
from datetime import datetime
from typing import NamedTuple, Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.security import Actor
from app.models.approval import (
    DECISION_INFO,
    INBOX_APPROVED,
    INBOX_COMPLETED,
    INBOX_REJECTED,
    INBOX_SUBMITTED,
    OPEN_STATUSES,
    RESULT_APPROVED,
    RESULT_REJECTED,
    SEQUENTIAL_DECISIONS,
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_IN_PROGRESS,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    VALID_DECISIONS,
    Approval,
    ApprovalCreate,
    ApprovalInbox,
    ApprovalStep,
    ApprovalStepCreate,
    ApprovalUpdate,
)
from app.models.outbox import ApprovalEventType
from app.services.outbox_service import OutboxService, outbox_service
from app.services.sequence_service import SequenceService, sequence_service


logger = logging.getLogger(__name__)

APPROVAL_MODULE_CODE = "A"
INBOX_MODULE_CODE = "I"

OUTCOME_APPROVE = "APPROVE"
OUTCOME_REJECT = "REJECT"

# COMPANY_MODULE_REFID_STAGE_XXXXXXXX
IDEMPOTENCY_KEY_PATTERN = re.compile(
    r"^(?P<company>[A-Z0-9]+)_(?P<module>[A-Z0-9]+)_(?P<ref_id>[A-Za-z0-9-]+)_(?P<stage>[A-Z0-9]+)_(?P<suffix>[0-9A-F]{8})$"
)

INBOX_BOX_TYPES = {
    "pending": INBOX_SUBMITTED,
    "approved": INBOX_APPROVED,
    "rejected": INBOX_REJECTED,
}


class ApprovalResult(NamedTuple):
    approval: Approval
    steps: list[ApprovalStep]


class ApprovalService:
    def __init__(
        self,
        sequence: Optional[SequenceService] = None,
        outbox: Optional[OutboxService] = None,
    ):
        self._sequence = sequence or sequence_service
        self._outbox = outbox or outbox_service

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    def validate_idempotency_key(self, idempotency_key: str, company_id: str) -> None:
        match = IDEMPOTENCY_KEY_PATTERN.match(idempotency_key or "")
        if not match:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid idempotency key format: {idempotency_key}",
            )
        if match.group("company") != company_id:
            raise HTTPException(
                status_code=400,
                detail="Idempotency key company does not match the caller's company",
            )

    def _require(self, value: Optional[str], field_name: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise HTTPException(status_code=400, detail=f"{field_name} is required")
        return cleaned

    def _normalize_steps(self, steps: list[ApprovalStepCreate]) -> list[tuple[int, str, str]]:
        normalized: list[tuple[int, str, str]] = []
        seen_step_nos: set[int] = set()
        seen_members: set[str] = set()

        for index, step in enumerate(steps or []):
            step_no = step.step_no if step.step_no is not None and step.step_no > 0 else index + 1
            member_id = self._require(step.member_id, "member_id")
            decision = (step.decision or "").strip().upper()
            if decision not in VALID_DECISIONS:
                raise HTTPException(status_code=400, detail=f"Unsupported step decision: {step.decision}")
            if step_no in seen_step_nos:
                raise HTTPException(status_code=400, detail=f"Duplicate step number: {step_no}")
            if member_id in seen_members:
                raise HTTPException(status_code=400, detail=f"Member appears in more than one step: {member_id}")
            seen_step_nos.add(step_no)
            seen_members.add(member_id)
            normalized.append((step_no, member_id, decision))

        return sorted(normalized, key=lambda item: item[0])

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    async def get_by_idempotency_key(
        self,
        session: AsyncSession,
        company_id: str,
        idempotency_key: str,
    ) -> Optional[Approval]:
        result = await session.exec(
            select(Approval).where(
                and_(
                    Approval.company_id == company_id,
                    Approval.idempotency_key == idempotency_key,
                )
            )
        )
        return result.first()

    async def _get_existing(
        self,
        session: AsyncSession,
        company_id: str,
        approval_id: str,
        for_update: bool = False,
    ) -> Approval:
        query = select(Approval).where(
            and_(
                Approval.company_id == company_id,
                Approval.approval_id == approval_id,
            )
        )
        if for_update:
            query = query.with_for_update()
        approval = (await session.exec(query)).first()
        if approval is None:
            raise HTTPException(status_code=404, detail=f"Approval not found: {approval_id}")
        return approval

    async def list_steps(
        self,
        session: AsyncSession,
        company_id: str,
        approval_id: str,
        for_update: bool = False,
    ) -> list[ApprovalStep]:
        query = (
            select(ApprovalStep)
            .where(
                and_(
                    ApprovalStep.company_id == company_id,
                    ApprovalStep.approval_id == approval_id,
                )
            )
            .order_by(ApprovalStep.step_no.asc())
        )
        if for_update:
            query = query.with_for_update()
        result = await session.exec(query)
        return list(result.all())

    async def get(self, session: AsyncSession, actor: Actor, approval_id: str) -> ApprovalResult:
        approval = await self._get_existing(session, actor.company_id, approval_id)
        steps = await self.list_steps(session, actor.company_id, approval_id)
        return ApprovalResult(approval, steps)

    async def list_approvals(
        self,
        session: AsyncSession,
        actor: Actor,
        status: Optional[str] = None,
        keyword: Optional[str] = None,
        box: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Approval]:
        bounded_limit = min(max(limit, 1), 200)
        query = select(Approval).where(Approval.company_id == actor.company_id)

        if box:
            box_key = box.strip().lower()
            if box_key == "sent":
                query = query.where(Approval.created_by == actor.member_id)
            elif box_key in INBOX_BOX_TYPES:
                inbox_approval_ids = select(ApprovalInbox.approval_id).where(
                    and_(
                        ApprovalInbox.company_id == actor.company_id,
                        ApprovalInbox.member_id == actor.member_id,
                        ApprovalInbox.inbox_type == INBOX_BOX_TYPES[box_key],
                    )
                )
                query = query.where(Approval.approval_id.in_(inbox_approval_ids))
            else:
                raise HTTPException(status_code=400, detail=f"Unsupported box: {box}")

        if status:
            query = query.where(Approval.status == status)
        if keyword and keyword.strip():
            query = query.where(Approval.title.ilike(f"%{keyword.strip()}%"))

        query = query.order_by(Approval.created_at.desc()).offset(max(offset, 0)).limit(bounded_limit)
        result = await session.exec(query)
        return result.all()

    # ------------------------------------------------------------------
    # state machine
    # ------------------------------------------------------------------

    def _build_inbox_entry(
        self,
        approval: Approval,
        step: ApprovalStep,
        inbox_id: str,
        created_at: datetime,
    ) -> ApprovalInbox:
        return ApprovalInbox(
            company_id=approval.company_id,
            inbox_id=inbox_id,
            member_id=step.member_id,
            approval_id=approval.approval_id,
            step_no=step.step_no,
            inbox_type=INBOX_SUBMITTED,
            is_read=False,
            decision=step.decision,
            title=approval.title,
            ref_entity=approval.ref_entity,
            ref_id=approval.ref_id,
            submitted_by=approval.updated_by or approval.created_by,
            submitted_at=approval.submitted_at,
            created_at=created_at,
        )

    async def create(
        self,
        session: AsyncSession,
        actor: Actor,
        request: ApprovalCreate,
        commit: bool = True,
    ) -> ApprovalResult:
        idempotency_key = (request.idempotency_key or "").strip()
        self.validate_idempotency_key(idempotency_key, actor.company_id)

        # A stored approval wins over whatever the retried payload carries.
        existing = await self.get_by_idempotency_key(session, actor.company_id, idempotency_key)
        if existing is not None:
            logger.info(
                "Approval create replayed: company_id=%s key=%s approval_id=%s",
                actor.company_id,
                idempotency_key,
                existing.approval_id,
            )
            steps = await self.list_steps(session, actor.company_id, existing.approval_id)
            return ApprovalResult(existing, steps)

        title = self._require(request.title, "title")
        ref_entity = self._require(request.ref_entity, "ref_entity")
        ref_id = self._require(request.ref_id, "ref_id")
        ref_stage = self._require(request.ref_stage, "ref_stage")
        callback_url = self._require(request.callback_url, "callback_url")
        step_lines = self._normalize_steps(request.steps)

        # Numbers come from independently committed allocations, before any
        # write is staged in this session.
        approval_id = await self._sequence.generate_tx_id(actor.company_id, APPROVAL_MODULE_CODE)
        inbox_ids = [
            await self._sequence.generate_tx_id(actor.company_id, INBOX_MODULE_CODE)
            for _ in step_lines
        ]

        now = datetime.utcnow()
        approval = Approval(
            company_id=actor.company_id,
            approval_id=approval_id,
            title=title,
            status=STATUS_SUBMITTED,
            ref_entity=ref_entity,
            ref_id=ref_id,
            ref_stage=ref_stage,
            callback_url=callback_url,
            idempotency_key=idempotency_key,
            content=request.content,
            submitted_at=now,
            completed_at=None,
            created_at=now,
            created_by=actor.member_id,
            updated_at=now,
            updated_by=actor.member_id,
        )
        session.add(approval)

        steps: list[ApprovalStep] = []
        for (step_no, member_id, decision), inbox_id in zip(step_lines, inbox_ids):
            step = ApprovalStep(
                company_id=actor.company_id,
                approval_id=approval_id,
                step_no=step_no,
                member_id=member_id,
                decision=decision,
            )
            session.add(step)
            steps.append(step)
            session.add(self._build_inbox_entry(approval, step, inbox_id, now))

        self._outbox.enqueue_event(
            session,
            approval,
            steps,
            ApprovalEventType.SUBMITTED,
            actor_id=actor.member_id,
            now=now,
        )

        if not commit:
            await session.flush()
            return ApprovalResult(approval, steps)

        try:
            await session.commit()
        except IntegrityError:
            # A concurrent create with the same key won the unique constraint.
            await session.rollback()
            existing = await self.get_by_idempotency_key(session, actor.company_id, idempotency_key)
            if existing is None:
                raise
            logger.info(f"Approval create race resolved to {existing.approval_id} (key={idempotency_key})")
            steps = await self.list_steps(session, actor.company_id, existing.approval_id)
            return ApprovalResult(existing, steps)

        logger.info(
            "Approval submitted: company_id=%s approval_id=%s ref=%s/%s/%s steps=%s",
            actor.company_id,
            approval_id,
            ref_entity,
            ref_id,
            ref_stage,
            len(steps),
        )
        return ApprovalResult(approval, steps)

    async def update(
        self,
        session: AsyncSession,
        actor: Actor,
        approval_id: str,
        request: ApprovalUpdate,
    ) -> ApprovalResult:
        approval = await self._get_existing(session, actor.company_id, approval_id, for_update=True)
        if approval.created_by != actor.member_id:
            raise HTTPException(status_code=403, detail="Only the submitter can edit an approval")

        steps = await self.list_steps(session, actor.company_id, approval_id)
        if approval.status != STATUS_SUBMITTED or any(step.decided_at is not None for step in steps):
            raise HTTPException(
                status_code=409,
                detail=f"Approval can no longer be edited. Current status: {approval.status}",
            )

        if request.title is not None:
            approval.title = self._require(request.title, "title")
        if request.content is not None:
            approval.content = request.content
        approval.updated_at = datetime.utcnow()
        approval.updated_by = actor.member_id
        session.add(approval)
        await session.commit()
        await session.refresh(approval)
        return ApprovalResult(approval, steps)

    def _halting_rejection(self, steps: list[ApprovalStep]) -> Optional[ApprovalStep]:
        for step in steps:
            if step.decision in SEQUENTIAL_DECISIONS and step.result == RESULT_REJECTED:
                return step
        return None

    def _enforce_step_order(self, steps: list[ApprovalStep], target: ApprovalStep) -> None:
        if target.decision == DECISION_INFO:
            return

        for step in steps:
            if step.step_no >= target.step_no:
                continue
            if step.decision not in SEQUENTIAL_DECISIONS:
                continue
            if step.decided_at is None:
                raise HTTPException(
                    status_code=409,
                    detail=(
                        f"Previous approver must decide first "
                        f"(step {step.step_no}: {step.member_id})"
                    ),
                )
            if step.result == RESULT_REJECTED:
                raise HTTPException(
                    status_code=409,
                    detail=f"Approval halted by earlier rejection at step {step.step_no}",
                )

    def _all_sequential_approved(self, steps: list[ApprovalStep]) -> bool:
        return all(
            step.decided_at is not None and step.result == RESULT_APPROVED
            for step in steps
            if step.decision in SEQUENTIAL_DECISIONS
        )

    async def _find_inbox(
        self,
        session: AsyncSession,
        company_id: str,
        approval_id: str,
        member_id: str,
    ) -> Optional[ApprovalInbox]:
        result = await session.exec(
            select(ApprovalInbox).where(
                and_(
                    ApprovalInbox.company_id == company_id,
                    ApprovalInbox.approval_id == approval_id,
                    ApprovalInbox.member_id == member_id,
                )
            )
        )
        return result.first()

    async def _update_inbox_after_decision(
        self,
        session: AsyncSession,
        approval: Approval,
        step: ApprovalStep,
        outcome: str,
        now: datetime,
    ) -> None:
        inbox = await self._find_inbox(session, approval.company_id, approval.approval_id, step.member_id)
        if inbox is None:
            return

        if step.decision == DECISION_INFO:
            inbox.inbox_type = INBOX_COMPLETED
        elif outcome == OUTCOME_REJECT:
            inbox.inbox_type = INBOX_REJECTED
        else:
            inbox.inbox_type = INBOX_APPROVED

        inbox.is_read = True
        inbox.read_at = now
        inbox.updated_at = now
        session.add(inbox)

    async def decide(
        self,
        session: AsyncSession,
        actor: Actor,
        approval_id: str,
        outcome: str,
        comment: Optional[str] = None,
        completion_status: str = STATUS_APPROVED,
    ) -> ApprovalResult:
        if outcome not in {OUTCOME_APPROVE, OUTCOME_REJECT}:
            raise HTTPException(status_code=400, detail=f"Unsupported decision outcome: {outcome}")
        if completion_status in OPEN_STATUSES or completion_status in {STATUS_REJECTED, STATUS_CANCELLED}:
            raise HTTPException(status_code=400, detail=f"Invalid completion status: {completion_status}")

        approval = await self._get_existing(session, actor.company_id, approval_id, for_update=True)
        steps = await self.list_steps(session, actor.company_id, approval_id, for_update=True)

        if approval.status not in OPEN_STATUSES:
            halted_by = self._halting_rejection(steps) if approval.status == STATUS_REJECTED else None
            if halted_by is not None:
                raise HTTPException(
                    status_code=409,
                    detail=f"Approval halted by earlier rejection at step {halted_by.step_no}",
                )
            raise HTTPException(
                status_code=409,
                detail=f"Only approvals awaiting decision can be processed. Current status: {approval.status}",
            )

        target = next((step for step in steps if step.member_id == actor.member_id), None)
        if target is None:
            raise HTTPException(status_code=403, detail="No authority to decide this approval")
        if target.decided_at is not None:
            raise HTTPException(status_code=409, detail="Approval step already decided")

        self._enforce_step_order(steps, target)

        now = datetime.utcnow()
        target.decided_at = now
        target.comment = comment
        target.result = RESULT_APPROVED if outcome == OUTCOME_APPROVE else RESULT_REJECTED
        session.add(target)

        if outcome == OUTCOME_REJECT and target.decision != DECISION_INFO:
            approval.status = STATUS_REJECTED
            approval.completed_at = now
            event_type = ApprovalEventType.REJECTED
        elif self._all_sequential_approved(steps):
            approval.status = completion_status
            approval.completed_at = now
            event_type = ApprovalEventType.APPROVED
        else:
            approval.status = STATUS_IN_PROGRESS
            approval.completed_at = None
            event_type = ApprovalEventType.SUBMITTED

        approval.updated_at = now
        approval.updated_by = actor.member_id
        session.add(approval)

        await self._update_inbox_after_decision(session, approval, target, outcome, now)
        self._outbox.enqueue_event(
            session,
            approval,
            steps,
            event_type,
            actor_id=actor.member_id,
            comment=comment,
            now=now,
        )
        await session.commit()

        logger.info(
            "Approval decision recorded: approval_id=%s step=%s outcome=%s status=%s",
            approval_id,
            target.step_no,
            outcome,
            approval.status,
        )
        return ApprovalResult(approval, steps)

    async def approve(
        self,
        session: AsyncSession,
        actor: Actor,
        approval_id: str,
        comment: Optional[str] = None,
    ) -> ApprovalResult:
        return await self.decide(session, actor, approval_id, OUTCOME_APPROVE, comment)

    async def reject(
        self,
        session: AsyncSession,
        actor: Actor,
        approval_id: str,
        comment: Optional[str] = None,
    ) -> ApprovalResult:
        return await self.decide(session, actor, approval_id, OUTCOME_REJECT, comment)

    async def cancel(
        self,
        session: AsyncSession,
        actor: Actor,
        approval_id: str,
        comment: Optional[str] = None,
    ) -> ApprovalResult:
        approval = await self._get_existing(session, actor.company_id, approval_id, for_update=True)
        if approval.status not in OPEN_STATUSES:
            raise HTTPException(
                status_code=409,
                detail=f"Only submitted or in-progress approvals can be cancelled. Current status: {approval.status}",
            )
        if approval.created_by != actor.member_id:
            raise HTTPException(status_code=403, detail="Only the submitter can cancel an approval")

        now = datetime.utcnow()
        approval.status = STATUS_CANCELLED
        approval.completed_at = now
        approval.updated_at = now
        approval.updated_by = actor.member_id
        session.add(approval)

        inboxes = (
            await session.exec(
                select(ApprovalInbox).where(
                    and_(
                        ApprovalInbox.company_id == actor.company_id,
                        ApprovalInbox.approval_id == approval_id,
                    )
                )
            )
        ).all()
        for inbox in inboxes:
            inbox.inbox_type = INBOX_COMPLETED
            if not inbox.is_read:
                inbox.is_read = True
                inbox.read_at = now
            inbox.updated_at = now
            session.add(inbox)

        steps = await self.list_steps(session, actor.company_id, approval_id)
        self._outbox.enqueue_event(
            session,
            approval,
            steps,
            ApprovalEventType.CANCELLED,
            actor_id=actor.member_id,
            comment=comment,
            now=now,
        )
        await session.commit()

        logger.info(f"Approval cancelled: approval_id={approval_id} by={actor.member_id}")
        return ApprovalResult(approval, steps)

    # ------------------------------------------------------------------
    # inbox
    # ------------------------------------------------------------------

    async def list_inbox(
        self,
        session: AsyncSession,
        actor: Actor,
        inbox_type: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[ApprovalInbox]:
        bounded_limit = min(max(limit, 1), 200)
        query = select(ApprovalInbox).where(
            and_(
                ApprovalInbox.company_id == actor.company_id,
                ApprovalInbox.member_id == actor.member_id,
            )
        )
        if inbox_type:
            query = query.where(ApprovalInbox.inbox_type == inbox_type)
        query = (
            query.order_by(ApprovalInbox.is_read.asc(), ApprovalInbox.submitted_at.desc())
            .offset(max(offset, 0))
            .limit(bounded_limit)
        )
        result = await session.exec(query)
        return result.all()

    async def mark_inbox_read(self, session: AsyncSession, actor: Actor, inbox_id: str) -> ApprovalInbox:
        inbox = (
            await session.exec(
                select(ApprovalInbox).where(
                    and_(
                        ApprovalInbox.company_id == actor.company_id,
                        ApprovalInbox.inbox_id == inbox_id,
                    )
                )
            )
        ).first()
        if inbox is None:
            raise HTTPException(status_code=404, detail=f"Inbox entry not found: {inbox_id}")
        if inbox.member_id != actor.member_id:
            raise HTTPException(status_code=403, detail="Only the owner can mark an inbox entry as read")
        if inbox.is_read:
            return inbox

        now = datetime.utcnow()
        inbox.is_read = True
        inbox.read_at = now
        inbox.updated_at = now
        session.add(inbox)
        await session.commit()
        await session.refresh(inbox)
        return inbox

    async def _count_inbox(self, session: AsyncSession, actor: Actor, *criteria) -> int:
        query = (
            select(func.count())
            .select_from(ApprovalInbox)
            .where(
                ApprovalInbox.company_id == actor.company_id,
                ApprovalInbox.member_id == actor.member_id,
                *criteria,
            )
        )
        return int((await session.exec(query)).one())

    async def unread_inbox_count(self, session: AsyncSession, actor: Actor) -> int:
        return await self._count_inbox(session, actor, ApprovalInbox.is_read == False)  # noqa: E712

    async def inbox_stats(self, session: AsyncSession, actor: Actor) -> dict[str, int]:
        return {
            "pending": await self._count_inbox(session, actor, ApprovalInbox.inbox_type == INBOX_SUBMITTED),
            "approved": await self._count_inbox(session, actor, ApprovalInbox.inbox_type == INBOX_APPROVED),
            "rejected": await self._count_inbox(session, actor, ApprovalInbox.inbox_type == INBOX_REJECTED),
            "completed": await self._count_inbox(session, actor, ApprovalInbox.inbox_type == INBOX_COMPLETED),
        }

    async def get_my_inbox_by_approval(
        self,
        session: AsyncSession,
        actor: Actor,
        approval_id: str,
    ) -> Optional[ApprovalInbox]:
        return await self._find_inbox(session, actor.company_id, approval_id, actor.member_id)


approval_service = ApprovalService()
