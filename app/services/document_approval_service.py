import html
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from sqlmodel import SQLModel, and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.security import Actor
from app.models.approval import ApprovalCreate, ApprovalStepCreate
from app.models.document import (
    DOCUMENT_STATUS_APPROVED,
    DOCUMENT_STATUS_DRAFT,
    DOCUMENT_STATUS_REJECTED,
    DOCUMENT_STATUS_SUBMITTED,
    STAGE_ACTUAL,
    STAGE_PLAN,
    ApprovalSubmission,
    Inspection,
    WorkOrder,
    WorkPermit,
)
from app.models.outbox import ApprovalEventType
from app.services.approval_service import ApprovalResult, ApprovalService, approval_service
from app.services.ref_handlers import ApprovalRefHandler, RefHandlerRegistry, ref_handler_registry


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class DocumentModule:
    ref_entity: str
    model: type[SQLModel]
    id_field: str
    stages: tuple[str, ...]
    callback_path: str
    label: str


DOCUMENT_MODULES: dict[str, DocumentModule] = {
    "INSP": DocumentModule(
        ref_entity="INSP",
        model=Inspection,
        id_field="inspection_id",
        stages=(STAGE_PLAN, STAGE_ACTUAL),
        callback_path="/api/inspections/approvals/webhook",
        label="Inspection",
    ),
    "WORK": DocumentModule(
        ref_entity="WORK",
        model=WorkOrder,
        id_field="order_id",
        stages=(STAGE_PLAN, STAGE_ACTUAL),
        callback_path="/api/work-orders/approvals/webhook",
        label="Work order",
    ),
    "WPER": DocumentModule(
        ref_entity="WPER",
        model=WorkPermit,
        id_field="permit_id",
        stages=(STAGE_PLAN,),
        callback_path="/api/work-permits/approvals/webhook",
        label="Work permit",
    ),
}

EVENT_DOCUMENT_STATUS = {
    ApprovalEventType.APPROVED.value: DOCUMENT_STATUS_APPROVED,
    ApprovalEventType.REJECTED.value: DOCUMENT_STATUS_REJECTED,
    ApprovalEventType.CANCELLED.value: DOCUMENT_STATUS_DRAFT,
}


class DocumentApprovalService:
    def __init__(self, engine: Optional[ApprovalService] = None):
        self._engine = engine or approval_service

    def module_for(self, ref_entity: str) -> DocumentModule:
        module = DOCUMENT_MODULES.get((ref_entity or "").upper())
        if module is None:
            raise HTTPException(status_code=400, detail=f"Unsupported document type: {ref_entity}")
        return module

    async def get_document(
        self,
        session: AsyncSession,
        company_id: str,
        ref_entity: str,
        doc_id: str,
        for_update: bool = False,
    ):
        module = self.module_for(ref_entity)
        model = module.model
        query = select(model).where(
            and_(
                model.company_id == company_id,
                getattr(model, module.id_field) == doc_id,
            )
        )
        if for_update:
            query = query.with_for_update()
        document = (await session.exec(query)).first()
        if document is None:
            raise HTTPException(status_code=404, detail=f"{module.label} not found: {doc_id}")
        return document

    def normalize_stage(self, module: DocumentModule, requested: Optional[str], current: Optional[str]) -> str:
        if requested and requested.strip():
            stage = requested.strip().upper()
            if stage not in module.stages:
                raise HTTPException(
                    status_code=400,
                    detail=f"Unsupported approval stage for {module.label.lower()}: {requested}",
                )
            return stage
        if current in module.stages:
            return current
        return STAGE_PLAN

    def build_idempotency_key(self, company_id: str, module: DocumentModule, doc_id: str, stage: str) -> str:
        suffix = uuid4().hex[:8].upper()
        return f"{company_id}_{module.ref_entity}_{doc_id}_{stage}_{suffix}"

    def resolve_callback_url(self, module: DocumentModule) -> str:
        base = (settings.WEBHOOK_CALLBACK_BASE or "").rstrip("/")
        return f"{base}/{module.callback_path.lstrip('/')}"

    def build_title(self, module: DocumentModule, stage: str, name: str) -> str:
        if stage == STAGE_ACTUAL:
            return f"{module.label} result approval: {name}"
        return f"{module.label} plan approval: {name}"

    def build_content(self, module: DocumentModule, document, stage: str) -> str:
        rows = [
            ("ID", getattr(document, module.id_field)),
            ("Name", document.name),
            ("Plant", getattr(document, "plant_id", None)),
            ("Work order", getattr(document, "work_order_id", None)),
            ("Planned date", getattr(document, "planned_date", None)),
        ]
        if stage == STAGE_ACTUAL:
            rows.append(("Actual date", getattr(document, "actual_date", None)))

        heading = "result" if stage == STAGE_ACTUAL else "plan"
        parts = [f"<h3>{html.escape(module.label)} {heading} approval request</h3>", "<table>"]
        for label, value in rows:
            if value is None and label in {"Plant", "Work order"}:
                continue
            text = value.isoformat() if isinstance(value, datetime) else (value or "-")
            parts.append(f"<tr><th>{html.escape(label)}</th><td>{html.escape(str(text))}</td></tr>")
        parts.append("</table>")
        if document.note:
            parts.append(f"<p><strong>Note:</strong></p><p>{html.escape(document.note)}</p>")
        return "".join(parts)

    async def submit_approval(
        self,
        session: AsyncSession,
        actor: Actor,
        ref_entity: str,
        doc_id: str,
        submission: ApprovalSubmission,
    ) -> tuple[SQLModel, ApprovalResult]:
        """Submit a DRAFT document for approval.

        The approval and the document update commit together.
        """
        module = self.module_for(ref_entity)
        document = await self.get_document(session, actor.company_id, module.ref_entity, doc_id, for_update=True)
        stage = self.normalize_stage(module, submission.stage, document.stage)

        if document.status != DOCUMENT_STATUS_DRAFT:
            raise HTTPException(
                status_code=409,
                detail=f"Only DRAFT documents can be submitted for approval. Current status: {document.status}",
            )

        request = ApprovalCreate(
            title=self.build_title(module, stage, document.name),
            ref_entity=module.ref_entity,
            ref_id=doc_id,
            ref_stage=stage,
            callback_url=self.resolve_callback_url(module),
            idempotency_key=self.build_idempotency_key(actor.company_id, module, doc_id, stage),
            content=self.build_content(module, document, stage),
            steps=[
                ApprovalStepCreate(step_no=step.step_no, member_id=step.member_id, decision=step.decision)
                for step in submission.steps
            ],
        )
        result = await self._engine.create(session, actor, request, commit=False)

        document.stage = stage
        document.status = DOCUMENT_STATUS_SUBMITTED
        document.approval_id = result.approval.approval_id
        document.updated_at = datetime.utcnow()
        document.updated_by = actor.member_id
        session.add(document)
        await session.commit()
        await session.refresh(document)

        logger.info(
            "Document submitted for approval: %s/%s stage=%s approval_id=%s",
            module.ref_entity,
            doc_id,
            stage,
            result.approval.approval_id,
        )
        return document, result

    async def apply_approval_status(
        self,
        session: AsyncSession,
        company_id: str,
        ref_entity: str,
        doc_id: str,
        stage: Optional[str],
        action: str,
    ):
        """Stage the document change for a received approval event; the caller commits."""
        document = await self.get_document(session, company_id, ref_entity, doc_id, for_update=True)

        new_status = EVENT_DOCUMENT_STATUS.get(action)
        if new_status is None:
            logger.debug(f"No document change for {ref_entity}/{doc_id} on {action}")
            return document

        if stage:
            document.stage = stage
        document.status = new_status
        if action == ApprovalEventType.CANCELLED.value:
            document.approval_id = None
        document.updated_at = datetime.utcnow()
        document.updated_by = SYSTEM_ACTOR
        session.add(document)
        return document


class DocumentApprovalHandler(ApprovalRefHandler):
    def __init__(self, module: DocumentModule, service: DocumentApprovalService):
        self.module = module
        self._service = service

    def supports(self, ref_entity: str, ref_stage: Optional[str]) -> bool:
        if ref_entity != self.module.ref_entity:
            return False
        return ref_stage is None or ref_stage in self.module.stages

    async def handle(
        self,
        session: AsyncSession,
        action: str,
        ref_id: str,
        ref_stage: Optional[str],
        company_id: str,
    ) -> None:
        logger.debug(f"{type(self).__name__}: entity={self.module.ref_entity} action={action} ref_id={ref_id}")
        await self._service.apply_approval_status(
            session,
            company_id,
            self.module.ref_entity,
            ref_id,
            ref_stage,
            action,
        )


def register_document_handlers(
    service: DocumentApprovalService,
    registry: Optional[RefHandlerRegistry] = None,
) -> list[DocumentApprovalHandler]:
    registry = registry or ref_handler_registry
    handlers = [DocumentApprovalHandler(module, service) for module in DOCUMENT_MODULES.values()]
    for handler in handlers:
        registry.register(handler)
    return handlers


document_approval_service = DocumentApprovalService()
document_approval_handlers = register_document_handlers(document_approval_service)
