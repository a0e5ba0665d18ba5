from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

DOCUMENT_STATUS_DRAFT = "DRAFT"
DOCUMENT_STATUS_SUBMITTED = "SUBMT"
DOCUMENT_STATUS_APPROVED = "APPRV"
DOCUMENT_STATUS_REJECTED = "REJCT"

STAGE_PLAN = "PLN"
STAGE_ACTUAL = "ACT"


class ApprovalDocumentBase(SQLModel):
    """Fields every approval-governed maintenance document carries."""

    company_id: str = Field(primary_key=True, max_length=20)
    name: str = Field(max_length=100)
    stage: str = Field(default=STAGE_PLAN, max_length=10)
    status: str = Field(default=DOCUMENT_STATUS_DRAFT, index=True, max_length=10)
    approval_id: Optional[str] = Field(default=None, index=True, max_length=20)
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    updated_by: Optional[str] = Field(default=None, max_length=20)


class Inspection(ApprovalDocumentBase, table=True):
    inspection_id: str = Field(primary_key=True, max_length=20)
    plant_id: Optional[str] = Field(default=None, max_length=20)
    planned_date: Optional[datetime] = None
    actual_date: Optional[datetime] = None


class WorkOrder(ApprovalDocumentBase, table=True):
    order_id: str = Field(primary_key=True, max_length=20)
    plant_id: Optional[str] = Field(default=None, max_length=20)
    planned_date: Optional[datetime] = None
    actual_date: Optional[datetime] = None


class WorkPermit(ApprovalDocumentBase, table=True):
    permit_id: str = Field(primary_key=True, max_length=20)
    work_order_id: Optional[str] = Field(default=None, max_length=20)
    planned_date: Optional[datetime] = None


class ApprovalLineStep(SQLModel):
    step_no: Optional[int] = None
    member_id: str
    decision: str


class ApprovalSubmission(SQLModel):
    stage: Optional[str] = None
    steps: list[ApprovalLineStep] = []
