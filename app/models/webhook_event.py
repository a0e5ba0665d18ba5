from datetime import datetime

from sqlmodel import Field, SQLModel


class WebhookIdempotency(SQLModel, table=True):
    company_id: str = Field(primary_key=True, max_length=20)
    idempotency_key: str = Field(primary_key=True, max_length=150)
    event_type: str | None = Field(default=None, index=True, max_length=20)
    processed_at: datetime = Field(default_factory=datetime.utcnow, index=True)
