"""
Webhook Event Database Model

Append-only dedup/audit record for provider webhooks. The composite unique
constraint on (event_id, provider) is the admission gate.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field

from app.infrastructure.db.models.base import UUIDMixin, utcnow


class WebhookEventModel(UUIDMixin, table=True):
    """Maps to the 'webhook_events' table in PostgreSQL."""
    
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("event_id", "provider", name="uq_webhook_events_event_provider"),
    )
    
    event_id: str = Field(max_length=255, nullable=False)
    provider: str = Field(max_length=20, nullable=False)
    event_type: Optional[str] = Field(default=None, max_length=100)
    processed_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=DateTime(timezone=True),
    )
