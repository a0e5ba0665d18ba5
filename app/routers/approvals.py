from typing import Any, Optional

from fastapi import APIRouter, Depends, status as http_status
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.security import Actor, get_current_actor
from app.db.engine import get_session
from app.models.approval import (
    Approval,
    ApprovalCreate,
    ApprovalDecision,
    ApprovalInbox,
    ApprovalStep,
    ApprovalUpdate,
)
from app.models.outbox import ApprovalOutbox
from app.services.approval_service import ApprovalResult, approval_service
from app.services.outbox_service import outbox_service


router = APIRouter(prefix="/approvals", tags=["approvals"])


def _serialize_step(step: ApprovalStep) -> dict[str, Any]:
    return {
        "step_no": step.step_no,
        "member_id": step.member_id,
        "decision": step.decision,
        "result": step.result,
        "decided_at": step.decided_at,
        "comment": step.comment,
    }


def _serialize_approval(approval: Approval, steps: Optional[list[ApprovalStep]] = None) -> dict[str, Any]:
    data = {
        "company_id": approval.company_id,
        "approval_id": approval.approval_id,
        "title": approval.title,
        "status": approval.status,
        "ref_entity": approval.ref_entity,
        "ref_id": approval.ref_id,
        "ref_stage": approval.ref_stage,
        "callback_url": approval.callback_url,
        "idempotency_key": approval.idempotency_key,
        "content": approval.content,
        "submitted_at": approval.submitted_at,
        "completed_at": approval.completed_at,
        "created_at": approval.created_at,
        "created_by": approval.created_by,
        "updated_at": approval.updated_at,
        "updated_by": approval.updated_by,
    }
    if steps is not None:
        data["steps"] = [_serialize_step(step) for step in steps]
    return data


def _serialize_result(result: ApprovalResult) -> dict[str, Any]:
    return _serialize_approval(result.approval, result.steps)


def _serialize_inbox(inbox: ApprovalInbox) -> dict[str, Any]:
    return {
        "inbox_id": inbox.inbox_id,
        "approval_id": inbox.approval_id,
        "member_id": inbox.member_id,
        "step_no": inbox.step_no,
        "inbox_type": inbox.inbox_type,
        "is_read": inbox.is_read,
        "read_at": inbox.read_at,
        "decision": inbox.decision,
        "title": inbox.title,
        "ref_entity": inbox.ref_entity,
        "ref_id": inbox.ref_id,
        "submitted_by": inbox.submitted_by,
        "submitted_at": inbox.submitted_at,
    }


def _serialize_outbox(row: ApprovalOutbox) -> dict[str, Any]:
    return {
        "id": row.id,
        "company_id": row.company_id,
        "approval_id": row.approval_id,
        "event_type": row.event_type,
        "status": row.status,
        "callback_url": row.callback_url,
        "idempotency_key": row.idempotency_key,
        "retry_count": row.retry_count,
        "last_error_message": row.last_error_message,
        "last_attempt_at": row.last_attempt_at,
        "next_attempt_at": row.next_attempt_at,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


@router.get("")
async def list_approvals(
    status: Optional[str] = None,
    keyword: Optional[str] = None,
    box: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    rows = await approval_service.list_approvals(
        session=session,
        actor=actor,
        status=status,
        keyword=keyword,
        box=box,
        limit=limit,
        offset=offset,
    )
    return {
        "company_id": actor.company_id,
        "approvals": [_serialize_approval(row) for row in rows],
    }


@router.post("", status_code=http_status.HTTP_201_CREATED)
async def create_approval(
    payload: ApprovalCreate,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    result = await approval_service.create(session, actor, payload)
    return _serialize_result(result)


# Static paths are declared before "/{approval_id}".

@router.get("/inbox")
async def list_inbox(
    inbox_type: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    rows = await approval_service.list_inbox(session, actor, inbox_type=inbox_type, limit=limit, offset=offset)
    return {"items": [_serialize_inbox(row) for row in rows]}


@router.get("/inbox/unread-count")
async def unread_inbox_count(
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    return {"unread": await approval_service.unread_inbox_count(session, actor)}


@router.get("/inbox/stats")
async def inbox_stats(
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    return await approval_service.inbox_stats(session, actor)


@router.post("/inbox/{inbox_id}/read")
async def mark_inbox_read(
    inbox_id: str,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    inbox = await approval_service.mark_inbox_read(session, actor, inbox_id)
    return _serialize_inbox(inbox)


@router.get("/monitoring/outbox-status")
async def outbox_status(
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    return await outbox_service.get_outbox_status(session, company_id=actor.company_id)


@router.get("/monitoring/failed")
async def failed_events(
    size: int = 20,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    rows = await outbox_service.get_failed_events(session, limit=size, company_id=actor.company_id)
    return {"items": [_serialize_outbox(row) for row in rows]}


@router.post("/monitoring/outbox/{outbox_id}/retry", status_code=http_status.HTTP_202_ACCEPTED)
async def retry_outbox_event(
    outbox_id: int,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    row = await outbox_service.retry(session, outbox_id, company_id=actor.company_id)
    return _serialize_outbox(row)


@router.get("/{approval_id}")
async def get_approval(
    approval_id: str,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    result = await approval_service.get(session, actor, approval_id)
    return _serialize_result(result)


@router.put("/{approval_id}")
async def update_approval(
    approval_id: str,
    payload: ApprovalUpdate,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    result = await approval_service.update(session, actor, approval_id, payload)
    return _serialize_result(result)


@router.delete("/{approval_id}")
async def delete_approval(
    approval_id: str,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    # Soft delete: the approval is cancelled and kept for audit.
    result = await approval_service.cancel(session, actor, approval_id)
    return _serialize_result(result)


@router.get("/{approval_id}/my-inbox")
async def get_my_inbox(
    approval_id: str,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    inbox = await approval_service.get_my_inbox_by_approval(session, actor, approval_id)
    return {"inbox": _serialize_inbox(inbox) if inbox else None}


@router.get("/{approval_id}/events")
async def list_approval_events(
    approval_id: str,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    await approval_service.get(session, actor, approval_id)
    rows = await outbox_service.list_events(session, actor.company_id, approval_id)
    return {"items": [_serialize_outbox(row) for row in rows]}


@router.post("/{approval_id}/approve")
async def approve_approval(
    approval_id: str,
    payload: Optional[ApprovalDecision] = None,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    comment = payload.comment if payload else None
    result = await approval_service.approve(session, actor, approval_id, comment)
    return _serialize_result(result)


@router.post("/{approval_id}/reject")
async def reject_approval(
    approval_id: str,
    payload: Optional[ApprovalDecision] = None,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    comment = payload.comment if payload else None
    result = await approval_service.reject(session, actor, approval_id, comment)
    return _serialize_result(result)


@router.post("/{approval_id}/cancel")
async def cancel_approval(
    approval_id: str,
    payload: Optional[ApprovalDecision] = None,
    session: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    comment = payload.comment if payload else None
    result = await approval_service.cancel(session, actor, approval_id, comment)
    return _serialize_result(result)
