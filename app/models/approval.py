from datetime import datetime
from typing import List, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

STATUS_SUBMITTED = "SUBMT"
STATUS_IN_PROGRESS = "PROC"
STATUS_APPROVED = "APPRV"
STATUS_REJECTED = "REJCT"
STATUS_CANCELLED = "CNCLD"

OPEN_STATUSES = {STATUS_SUBMITTED, STATUS_IN_PROGRESS}

DECISION_APPROVAL = "APPRL"
DECISION_AGREE = "AGREE"
DECISION_INFO = "INFO"

VALID_DECISIONS = {DECISION_APPROVAL, DECISION_AGREE, DECISION_INFO}
SEQUENTIAL_DECISIONS = {DECISION_APPROVAL, DECISION_AGREE}

RESULT_APPROVED = "APPRV"
RESULT_REJECTED = "REJCT"

INBOX_SUBMITTED = "SUBMT"
INBOX_APPROVED = "APPRV"
INBOX_REJECTED = "REJCT"
INBOX_COMPLETED = "CMPLT"


class Approval(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("company_id", "idempotency_key", name="uq_approval_company_idempotency"),
    )

    company_id: str = Field(primary_key=True, max_length=20)
    approval_id: str = Field(primary_key=True, max_length=20)
    title: str = Field(max_length=100)
    status: str = Field(default=STATUS_SUBMITTED, index=True, max_length=10)

    ref_entity: str = Field(index=True, max_length=64)
    ref_id: str = Field(index=True, max_length=64)
    ref_stage: str = Field(max_length=10)
    callback_url: str = Field(max_length=255)
    idempotency_key: str = Field(index=True, max_length=100)
    content: Optional[str] = None

    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    created_by: Optional[str] = Field(default=None, index=True, max_length=20)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    updated_by: Optional[str] = Field(default=None, max_length=20)


class ApprovalStep(SQLModel, table=True):
    company_id: str = Field(primary_key=True, max_length=20)
    approval_id: str = Field(primary_key=True, max_length=20)
    step_no: int = Field(primary_key=True)

    member_id: str = Field(index=True, max_length=20)
    decision: str = Field(max_length=10)
    result: Optional[str] = Field(default=None, max_length=10)
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None


class ApprovalInbox(SQLModel, table=True):
    company_id: str = Field(primary_key=True, max_length=20)
    inbox_id: str = Field(primary_key=True, max_length=20)

    member_id: str = Field(index=True, max_length=20)
    approval_id: str = Field(index=True, max_length=20)
    step_no: Optional[int] = None
    inbox_type: str = Field(default=INBOX_SUBMITTED, index=True, max_length=10)
    is_read: bool = Field(default=False, index=True)
    read_at: Optional[datetime] = None
    decision: Optional[str] = Field(default=None, max_length=10)

    title: Optional[str] = Field(default=None, max_length=100)
    ref_entity: Optional[str] = Field(default=None, max_length=64)
    ref_id: Optional[str] = Field(default=None, max_length=64)
    submitted_by: Optional[str] = Field(default=None, max_length=20)
    submitted_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None


class ApprovalStepCreate(SQLModel):
    step_no: Optional[int] = None
    member_id: str
    decision: str


class ApprovalCreate(SQLModel):
    title: str
    ref_entity: str
    ref_id: str
    ref_stage: str
    callback_url: str
    idempotency_key: str
    content: Optional[str] = None
    steps: List[ApprovalStepCreate] = []


class ApprovalUpdate(SQLModel):
    title: Optional[str] = None
    content: Optional[str] = None


class ApprovalDecision(SQLModel):
    comment: Optional[str] = None
