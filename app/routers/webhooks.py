from fastapi import APIRouter, Depends, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from app.db.engine import get_session
from app.services.document_approval_service import document_approval_service  # noqa: F401  registers handlers
from app.services.webhook_receiver import webhook_receiver

router = APIRouter(tags=["webhooks"])


@router.post("/inspections/approvals/webhook")
async def inspection_approval_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    payload = await request.body()
    return await webhook_receiver.receive(session, payload, request.headers, ref_entity="INSP")


@router.post("/work-orders/approvals/webhook")
async def work_order_approval_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    payload = await request.body()
    return await webhook_receiver.receive(session, payload, request.headers, ref_entity="WORK")


@router.post("/work-permits/approvals/webhook")
async def work_permit_approval_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    payload = await request.body()
    return await webhook_receiver.receive(session, payload, request.headers, ref_entity="WPER")
