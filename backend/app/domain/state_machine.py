"""
Subscription State Machine

Pure decision logic for subscription status transitions. Nothing in this
module performs I/O: callers feed in the current subscription and a
provider outcome and receive the partial update to persist.

Edges:
- active/past_due --(renewal charge succeeds)--> active, period advanced
- active/past_due --(renewal charge fails)--> past_due
- downgrading --(charge for scheduled plan succeeds)--> active on the new plan
- downgrading --(charge fails)--> past_due
- active --(user cancels)--> canceling
- canceling --(period elapsed)--> canceled, plan Free, authorization cleared
- active --(user requests lower plan)--> downgrading
- any --(provider reports deletion)--> canceled, plan Free
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from app.domain.subscription import (
    Plan,
    PaymentProvider,
    Subscription,
    SubscriptionChange,
    SubscriptionStatus,
    is_paid_plan,
    next_lower_paid_plan,
    plan_rank,
)
from app.infrastructure.exceptions import InvalidTransitionError


logger = logging.getLogger(__name__)

DEFAULT_BILLING_CYCLE = timedelta(days=30)


class BillingEvent(str, Enum):
    """Facts that can move a subscription between states."""
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    AUTHORIZATION_MISSING = "authorization_missing"
    PERIOD_ELAPSED = "period_elapsed"
    CANCEL_REQUESTED = "cancel_requested"
    DOWNGRADE_REQUESTED = "downgrade_requested"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PROVIDER_UPDATED = "provider_updated"
    PROVIDER_DELETED = "provider_deleted"


class ProviderOutcome(BaseModel):
    """
    A canonical billing fact.

    ``plan`` is the plan the fact refers to (the charged plan for renewals,
    the target for downgrade requests, the provider-reported plan for
    webhooks). ``status`` is a provider-reported status that has already
    been passed through the translation table; it may be a raw value when
    the table had no entry for it.
    """
    event: BillingEvent
    occurred_at: datetime
    plan: Optional[Plan] = None
    scheduled_plan: Optional[Plan] = None
    status: Optional[str] = None
    period_end: Optional[datetime] = None
    provider: Optional[PaymentProvider] = None
    authorization_token: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None


# =============================================================================
# Provider status translation
# =============================================================================

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.PENDING,
    "paused": SubscriptionStatus.PAUSED,
}

PAYSTACK_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "non-renewing": SubscriptionStatus.CANCELING,
    "attention": SubscriptionStatus.PAST_DUE,
    "completed": SubscriptionStatus.CANCELED,
    "complete": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
}

PROVIDER_STATUS_MAPS = {
    PaymentProvider.STRIPE: STRIPE_STATUS_MAP,
    PaymentProvider.PAYSTACK: PAYSTACK_STATUS_MAP,
}


def map_provider_status(provider: PaymentProvider, raw_status: str) -> str:
    """
    Translate a provider status into the canonical vocabulary.

    Unknown statuses pass through unchanged and are logged as unmapped.
    """
    mapped = PROVIDER_STATUS_MAPS.get(provider, {}).get(raw_status)
    if mapped is None:
        logger.warning(f"Unmapped {provider.value} subscription status: {raw_status!r}")
        return raw_status
    return mapped.value


def to_canonical_status(value: Optional[str]) -> Optional[SubscriptionStatus]:
    if value is None:
        return None
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


# =============================================================================
# Renewal planning (cron sweep dispatch)
# =============================================================================

class RenewalAction(str, Enum):
    CHARGE = "charge"
    CANCEL = "cancel"
    MARK_PAST_DUE = "mark_past_due"
    SKIP = "skip"


@dataclass(frozen=True)
class RenewalPlan:
    action: RenewalAction
    charge_plan: Optional[Plan] = None
    purpose: Optional[str] = None


def resolve_downgrade_target(subscription: Subscription) -> Plan:
    """
    Plan a downgrading subscription moves to at period end.

    An explicit scheduled plan wins; otherwise the next lower paid plan.
    """
    if subscription.scheduled_plan is not None:
        return subscription.scheduled_plan
    target = next_lower_paid_plan(subscription.plan)
    if target is None:
        raise InvalidTransitionError(
            f"No lower paid plan to downgrade {subscription.plan.value} to",
            status=subscription.status.value,
            event=BillingEvent.DOWNGRADE_REQUESTED.value,
        )
    return target


def plan_renewal(subscription: Subscription) -> RenewalPlan:
    """Decide what the billing sweep does with a due subscription."""
    if not is_paid_plan(subscription.plan):
        return RenewalPlan(RenewalAction.SKIP)

    status = subscription.status

    if status == SubscriptionStatus.CANCELING:
        return RenewalPlan(RenewalAction.CANCEL)

    # Stripe charges these itself; renewals and downgrades arrive as webhooks
    if subscription.is_provider_billed:
        return RenewalPlan(RenewalAction.SKIP)

    if status == SubscriptionStatus.DOWNGRADING:
        target = resolve_downgrade_target(subscription)
        if not subscription.has_authorization:
            return RenewalPlan(RenewalAction.MARK_PAST_DUE)
        return RenewalPlan(RenewalAction.CHARGE, charge_plan=target, purpose="downgrade")

    if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
        if not subscription.has_authorization:
            return RenewalPlan(RenewalAction.MARK_PAST_DUE)
        return RenewalPlan(RenewalAction.CHARGE, charge_plan=subscription.plan, purpose="renewal")

    return RenewalPlan(RenewalAction.SKIP)


# =============================================================================
# Transitions
# =============================================================================

def next_period_end(
    current_end: Optional[datetime],
    now: datetime,
    cycle: timedelta = DEFAULT_BILLING_CYCLE,
) -> datetime:
    """
    Advance a period by one billing cycle.

    A period that is still behind ``now`` after advancing is re-anchored at
    ``now`` so one successful charge never leaves the subscription due.
    """
    if current_end is None:
        return now + cycle
    advanced = current_end + cycle
    if advanced <= now:
        return now + cycle
    return advanced


def _reject(subscription: Subscription, event: BillingEvent, reason: str) -> InvalidTransitionError:
    return InvalidTransitionError(
        f"Cannot apply {event.value} to {subscription.status.value} subscription: {reason}",
        status=subscription.status.value,
        event=event.value,
    )


def _provider_refs(outcome: ProviderOutcome) -> dict:
    refs = {}
    if outcome.provider is not None:
        refs["payment_provider"] = outcome.provider
    if outcome.authorization_token:
        refs["payment_authorization_token"] = outcome.authorization_token
    if outcome.customer_ref:
        refs["provider_customer_ref"] = outcome.customer_ref
    if outcome.subscription_ref:
        refs["provider_subscription_ref"] = outcome.subscription_ref
    return refs


def _canceled_change(**extra) -> SubscriptionChange:
    return SubscriptionChange(
        status=SubscriptionStatus.CANCELED,
        plan=Plan.FREE,
        scheduled_plan=None,
        current_period_end=None,
        payment_authorization_token=None,
        **extra,
    )


_RENEWABLE = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.DOWNGRADING,
)


def transition(
    current: Subscription,
    outcome: ProviderOutcome,
    cycle: timedelta = DEFAULT_BILLING_CYCLE,
) -> SubscriptionChange:
    """
    Compute the next state for ``current`` given ``outcome``.

    Returns the partial update to persist. Raises InvalidTransitionError
    when the edge does not exist for the current status.
    """
    event = outcome.event
    now = outcome.occurred_at

    if event == BillingEvent.RENEWAL_SUCCEEDED:
        if current.status not in _RENEWABLE:
            raise _reject(current, event, "subscription is not renewable")
        change = {
            "status": SubscriptionStatus.ACTIVE,
            "current_period_end": next_period_end(current.current_period_end, now, cycle),
        }
        if current.status == SubscriptionStatus.DOWNGRADING:
            change["plan"] = outcome.plan or resolve_downgrade_target(current)
            change["scheduled_plan"] = None
        return SubscriptionChange(**change)

    if event in (BillingEvent.RENEWAL_FAILED, BillingEvent.AUTHORIZATION_MISSING):
        if current.status not in _RENEWABLE:
            raise _reject(current, event, "subscription is not renewable")
        return SubscriptionChange(status=SubscriptionStatus.PAST_DUE)

    if event == BillingEvent.PERIOD_ELAPSED:
        if current.status != SubscriptionStatus.CANCELING:
            raise _reject(current, event, "only canceling subscriptions lapse")
        return _canceled_change()

    if event == BillingEvent.CANCEL_REQUESTED:
        if not is_paid_plan(current.plan):
            raise _reject(current, event, "no paid subscription to cancel")
        if current.status not in _RENEWABLE:
            raise _reject(current, event, "subscription cannot be canceled")
        return SubscriptionChange(status=SubscriptionStatus.CANCELING, scheduled_plan=None)

    if event == BillingEvent.DOWNGRADE_REQUESTED:
        target = outcome.plan
        if current.status != SubscriptionStatus.ACTIVE:
            raise _reject(current, event, "only active subscriptions can downgrade")
        if target is None or not is_paid_plan(target):
            raise _reject(current, event, "downgrade target must be a paid plan")
        if plan_rank(target) >= plan_rank(current.plan):
            raise _reject(current, event, f"{target.value} is not below {current.plan.value}")
        return SubscriptionChange(status=SubscriptionStatus.DOWNGRADING, scheduled_plan=target)

    if event == BillingEvent.PAYMENT_SUCCEEDED:
        return _payment_succeeded(current, outcome, cycle)

    if event == BillingEvent.PAYMENT_FAILED:
        if not is_paid_plan(current.plan) or current.status == SubscriptionStatus.CANCELED:
            raise _reject(current, event, "no paid subscription to mark past due")
        return SubscriptionChange(status=SubscriptionStatus.PAST_DUE)

    if event == BillingEvent.PROVIDER_UPDATED:
        return _provider_updated(current, outcome)

    if event == BillingEvent.PROVIDER_DELETED:
        return _canceled_change(provider_subscription_ref=None)

    raise _reject(current, event, "unknown event")


def _payment_succeeded(
    current: Subscription,
    outcome: ProviderOutcome,
    cycle: timedelta,
) -> SubscriptionChange:
    plan = outcome.plan or current.plan
    change = {
        "current_period_end": outcome.period_end or (outcome.occurred_at + cycle),
        **_provider_refs(outcome),
    }

    pending_intent = current.status in (
        SubscriptionStatus.CANCELING,
        SubscriptionStatus.DOWNGRADING,
    )
    if pending_intent and plan == current.plan:
        # A payment within the period does not undo a scheduled cancel/downgrade.
        return SubscriptionChange(**change)

    change["status"] = SubscriptionStatus.ACTIVE
    if plan != current.plan:
        change["plan"] = plan
    if current.scheduled_plan is not None:
        change["scheduled_plan"] = None
    return SubscriptionChange(**change)


def _provider_updated(current: Subscription, outcome: ProviderOutcome) -> SubscriptionChange:
    status = to_canonical_status(outcome.status)

    if status == SubscriptionStatus.CANCELED:
        return _canceled_change(**_provider_refs(outcome))

    change = _provider_refs(outcome)
    if outcome.period_end is not None:
        change["current_period_end"] = outcome.period_end

    if status == SubscriptionStatus.DOWNGRADING:
        scheduled = outcome.scheduled_plan or current.scheduled_plan
        if scheduled is None or plan_rank(scheduled) >= plan_rank(current.plan):
            # Downgrade already applied (or nothing lower to move to); the
            # provider only reports downgrades for live subscriptions.
            logger.info(
                f"No pending downgrade for user {current.user_id}; "
                f"treating provider update as active"
            )
            change["status"] = SubscriptionStatus.ACTIVE
            if current.scheduled_plan is not None:
                change["scheduled_plan"] = None
        else:
            change["status"] = status
            change["scheduled_plan"] = scheduled
        return SubscriptionChange(**change)

    if status is not None:
        change["status"] = status
    elif outcome.status is not None:
        logger.warning(
            f"Keeping status {current.status.value} for user {current.user_id}; "
            f"provider status {outcome.status!r} is not canonical"
        )

    if outcome.plan is not None and outcome.plan != current.plan:
        change["plan"] = outcome.plan
        if current.scheduled_plan == outcome.plan:
            change["scheduled_plan"] = None
    return SubscriptionChange(**change)
