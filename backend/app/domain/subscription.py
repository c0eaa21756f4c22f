"""
Subscription Domain Models

Domain models for subscription billing following Clean Architecture.
Enums, DTOs, and domain entities for the billing bounded context.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Canonical subscription lifecycle status."""
    ACTIVE = "active"
    CANCELING = "canceling"
    DOWNGRADING = "downgrading"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"
    PENDING = "pending"


class Plan(str, Enum):
    """Plan identifiers."""
    FREE = "Free"
    PRO = "Pro"
    PLUS = "Plus"


class PaymentProvider(str, Enum):
    """Payment providers that deliver webhooks and hold authorizations."""
    STRIPE = "stripe"
    PAYSTACK = "paystack"


class NotificationKind(str, Enum):
    """Billing notifications sent to users."""
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    PLAN_DOWNGRADED = "plan_downgraded"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"
    PAYMENT_FAILED = "payment_failed"


# =============================================================================
# Domain Entities
# =============================================================================

class Subscription(BaseModel):
    """Core subscription domain entity (one per user)."""
    id: Optional[str] = None
    user_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    plan: Plan = Plan.FREE
    scheduled_plan: Optional[Plan] = None
    current_period_end: Optional[datetime] = None
    payment_provider: Optional[PaymentProvider] = None
    payment_authorization_token: Optional[str] = None
    provider_customer_ref: Optional[str] = None
    provider_subscription_ref: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    session_version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def has_authorization(self) -> bool:
        return bool(self.payment_authorization_token)

    @property
    def is_provider_billed(self) -> bool:
        """Stripe subscriptions renew on Stripe's side and report back through webhooks."""
        return self.payment_provider == PaymentProvider.STRIPE and bool(self.provider_subscription_ref)

    def is_due(self, now: datetime) -> bool:
        """Whether the paid period has elapsed at ``now``."""
        return (
            self.plan != Plan.FREE
            and self.current_period_end is not None
            and self.current_period_end <= now
        )

    def is_sweepable(self, now: datetime) -> bool:
        """
        Whether the renewal sweep has work to do for this subscription.

        Rows the sweep cannot move forward (held, awaiting manual recovery,
        or renewed by the provider) stay out of the candidate list so they
        never crowd out subscriptions that are actually due.
        """
        if not self.is_due(now):
            return False
        if self.status == SubscriptionStatus.CANCELING:
            return True
        if self.is_provider_billed:
            return False
        if self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.DOWNGRADING):
            return True
        return self.status == SubscriptionStatus.PAST_DUE and self.has_authorization


class SubscriptionChange(BaseModel):
    """
    Partial update produced by the state machine.

    Only fields that were explicitly set are written back, so an
    explicit ``None`` clears a column while an unset field leaves it alone.
    """
    status: Optional[SubscriptionStatus] = None
    plan: Optional[Plan] = None
    scheduled_plan: Optional[Plan] = None
    current_period_end: Optional[datetime] = None
    payment_provider: Optional[PaymentProvider] = None
    payment_authorization_token: Optional[str] = None
    provider_customer_ref: Optional[str] = None
    provider_subscription_ref: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.model_fields_set

    def apply_to(self, subscription: Subscription) -> Subscription:
        """Return a copy of ``subscription`` with this change applied."""
        return subscription.model_copy(update=self.model_dump(exclude_unset=True))


# =============================================================================
# Request/Response DTOs
# =============================================================================

class SweepStatus(str, Enum):
    """Outcome of a billing sweep invocation."""
    COMPLETED = "completed"
    SKIPPED = "skipped"


class SweepResult(BaseModel):
    """Aggregate result of one billing sweep."""
    status: SweepStatus = SweepStatus.COMPLETED
    reason: Optional[str] = None
    processed: int = 0
    renewed: int = 0
    cancelled: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class WebhookResult(BaseModel):
    """Acknowledgement returned to a payment provider."""
    received: bool = True
    duplicate: bool = False
    event_type: Optional[str] = None


class ChangePlanRequest(BaseModel):
    """Request DTO for a plan change."""
    new_plan: Plan = Field(..., description="Target plan (Pro or Plus)")


class SubscriptionStatusResponse(BaseModel):
    """Response DTO for subscription status."""
    plan: Plan
    status: SubscriptionStatus
    scheduled_plan: Optional[Plan] = None
    current_period_end: Optional[datetime] = None
    is_active: bool = Field(description="Whether user has an active paid subscription")
    daily_message_limit: int


# =============================================================================
# Plan Configuration (Business Logic)
# =============================================================================

PLAN_CONFIG = {
    Plan.FREE: {
        "name": "Free",
        "price_usd_cents": 0,
        "daily_message_limit": 10,
        "rank": 0,
    },
    Plan.PRO: {
        "name": "Pro Plan",
        "price_usd_cents": 499,
        "daily_message_limit": 100,
        "rank": 1,
    },
    Plan.PLUS: {
        "name": "Plus Plan",
        "price_usd_cents": 999,
        "daily_message_limit": 300,
        "rank": 2,
    },
}


def get_plan_price_cents(plan: Plan) -> int:
    """Monthly price of a plan in USD cents."""
    return PLAN_CONFIG[plan]["price_usd_cents"]


def get_daily_message_limit(plan: Plan) -> int:
    return PLAN_CONFIG.get(plan, PLAN_CONFIG[Plan.FREE])["daily_message_limit"]


def plan_rank(plan: Plan) -> int:
    return PLAN_CONFIG[plan]["rank"]


def is_paid_plan(plan: Plan) -> bool:
    return plan_rank(plan) > 0


def next_lower_paid_plan(plan: Plan) -> Optional[Plan]:
    """The highest-ranked paid plan strictly below ``plan``, if any."""
    lower = [
        candidate for candidate in PLAN_CONFIG
        if 0 < plan_rank(candidate) < plan_rank(plan)
    ]
    if not lower:
        return None
    return max(lower, key=plan_rank)


def parse_plan(value: Optional[str]) -> Optional[Plan]:
    """Parse a provider-supplied plan name, case-insensitively."""
    if not value:
        return None
    for plan in Plan:
        if plan.value.lower() == str(value).strip().lower():
            return plan
    return None
