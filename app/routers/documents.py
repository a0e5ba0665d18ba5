from typing import Any

from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.security import Actor, get_current_actor
from app.db.engine import get_session
from app.models.document import ApprovalSubmission
from app.routers.approvals import _serialize_result
from app.services.document_approval_service import DOCUMENT_MODULES, document_approval_service


router = APIRouter(tags=["documents"])

PATH_ENTITIES = {
    "inspections": "INSP",
    "work-orders": "WORK",
    "work-permits": "WPER",
}


def _serialize_document(ref_entity: str, document) -> dict[str, Any]:
    module = DOCUMENT_MODULES[ref_entity]
    data = document.model_dump()
    data["id"] = getattr(document, module.id_field)
    data["ref_entity"] = ref_entity
    return data


def _register_document_routes(path: str, ref_entity: str) -> None:
    async def get_document(
        doc_id: str,
        session: AsyncSession = Depends(get_session),
        actor: Actor = Depends(get_current_actor),
    ):
        document = await document_approval_service.get_document(session, actor.company_id, ref_entity, doc_id)
        return _serialize_document(ref_entity, document)

    async def submit_document_approval(
        doc_id: str,
        payload: ApprovalSubmission,
        session: AsyncSession = Depends(get_session),
        actor: Actor = Depends(get_current_actor),
    ):
        document, result = await document_approval_service.submit_approval(
            session, actor, ref_entity, doc_id, payload
        )
        return {
            "document": _serialize_document(ref_entity, document),
            "approval": _serialize_result(result),
        }

    router.add_api_route(f"/{path}/{{doc_id}}", get_document, methods=["GET"], name=f"get_{ref_entity.lower()}")
    router.add_api_route(
        f"/{path}/{{doc_id}}/approvals",
        submit_document_approval,
        methods=["POST"],
        status_code=201,
        name=f"submit_{ref_entity.lower()}_approval",
    )


for _path, _ref_entity in PATH_ENTITIES.items():
    _register_document_routes(_path, _ref_entity)
