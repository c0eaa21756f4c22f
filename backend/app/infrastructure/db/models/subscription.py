"""
Subscription Database Model

SQLModel table for subscription data persistence.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, text
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class SubscriptionModel(UUIDMixin, TimestampMixin, table=True):
    """
    Subscription table, one row per user.
    
    Maps to the 'subscriptions' table in PostgreSQL. The billing sweep reads
    it through the partial index on current_period_end.
    """
    
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "ix_subscriptions_billing_due",
            "current_period_end",
            postgresql_where=text("plan <> 'Free' AND current_period_end IS NOT NULL"),
        ),
    )
    
    user_id: str = Field(max_length=64, unique=True, index=True, nullable=False)
    
    # Subscription state
    status: str = Field(default="active", max_length=20)
    plan: str = Field(default="Free", max_length=20)
    scheduled_plan: Optional[str] = Field(default=None, max_length=20)
    current_period_end: Optional[datetime] = Field(
        default=None,
        sa_type=DateTime(timezone=True),
    )
    
    # Provider references
    payment_provider: Optional[str] = Field(default=None, max_length=20)
    payment_authorization_token: Optional[str] = Field(default=None, max_length=255)
    provider_customer_ref: Optional[str] = Field(default=None, max_length=255, index=True)
    provider_subscription_ref: Optional[str] = Field(default=None, max_length=255, index=True)
    
    # Contact details for notifications
    email: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=100)
    
    # Bumped atomically to invalidate issued session tokens
    session_version: int = Field(default=1, nullable=False)
