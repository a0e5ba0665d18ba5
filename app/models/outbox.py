from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


class ApprovalEventType(str, Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class ApprovalOutbox(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True, max_length=20)
    approval_id: str = Field(index=True, max_length=20)
    callback_url: str = Field(max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=150)
    event_type: ApprovalEventType
    status: OutboxStatus = Field(default=OutboxStatus.PENDING, index=True)
    payload: str

    retry_count: int = Field(default=0)
    last_error_message: Optional[str] = Field(default=None, max_length=500)
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: Optional[datetime] = None


class ApprovalWebhookLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    outbox_id: Optional[int] = Field(default=None, index=True)
    company_id: str = Field(max_length=20)
    approval_id: str = Field(max_length=20)
    webhook_url: str = Field(max_length=255)
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
