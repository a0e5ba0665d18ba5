from app.models.approval import (
    Approval, ApprovalStep, ApprovalInbox,
    ApprovalCreate, ApprovalStepCreate, ApprovalUpdate, ApprovalDecision,
)
from app.models.outbox import ApprovalOutbox, ApprovalWebhookLog, ApprovalEventType, OutboxStatus
from app.models.webhook_event import WebhookIdempotency
from app.models.sequence import Sequence
from app.models.document import (
    Inspection, WorkOrder, WorkPermit, ApprovalLineStep, ApprovalSubmission,
)

__all__ = [
    "Approval", "ApprovalStep", "ApprovalInbox",
    "ApprovalCreate", "ApprovalStepCreate", "ApprovalUpdate", "ApprovalDecision",
    "ApprovalOutbox", "ApprovalWebhookLog", "ApprovalEventType", "OutboxStatus",
    "WebhookIdempotency",
    "Sequence",
    "Inspection", "WorkOrder", "WorkPermit", "ApprovalLineStep", "ApprovalSubmission",
]
