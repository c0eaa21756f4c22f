"""
Webhook Payload Translation

Maps verified Stripe and Paystack webhook payloads onto canonical
ProviderEvents. Provider field names and status vocabularies stay in
this module; the orchestrator and state machine only see canonical facts.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel

from app.domain.state_machine import BillingEvent, ProviderOutcome, map_provider_status
from app.domain.subscription import PaymentProvider, SubscriptionStatus, parse_plan, plan_rank
from app.infrastructure.exceptions import ValidationError


logger = logging.getLogger(__name__)

# Metadata "type" values on charges the billing sweep initiates itself
SWEEP_CHARGE_TYPES = {"renewal", "downgrade"}


class ProviderEvent(BaseModel):
    """
    A webhook delivery in canonical form.

    ``outcome`` is None for event types the engine intentionally ignores.
    The subscription is located by ``user_id`` first, then by the
    provider's subscription reference, then by customer reference.
    """
    event_id: str
    event_type: str
    provider: PaymentProvider
    user_id: Optional[str] = None
    email: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    outcome: Optional[ProviderOutcome] = None


def _ref(value: Any) -> Optional[str]:
    """Provider references arrive either as an ID string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _metadata_user_id(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if not metadata:
        return None
    return metadata.get("userId") or metadata.get("user_id")


def _from_epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise ValidationError(f"Invalid provider timestamp: {value!r}", original_error=e) from e


def _from_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable provider date: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Stripe
# =============================================================================

def _stripe_invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription:
        return _ref(subscription)
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


def _stripe_invoice_user_id(invoice: Dict[str, Any]) -> Optional[str]:
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return (
        _metadata_user_id(details.get("metadata"))
        or _metadata_user_id(invoice.get("subscription_details"))
        or _metadata_user_id(invoice.get("metadata"))
    )


def _stripe_subscription_period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    items = (subscription.get("items") or {}).get("data") or []
    if items and items[0].get("current_period_end"):
        return _from_epoch(items[0]["current_period_end"])
    return _from_epoch(subscription.get("current_period_end"))


def _stripe_subscription_price_plan(
    subscription: Dict[str, Any],
    price_plan_map: Dict[str, str],
):
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price_id = (items[0].get("price") or {}).get("id")
    return parse_plan(price_plan_map.get(price_id))


def _stripe_invoice_line_plan(line: Dict[str, Any], price_plan_map: Dict[str, str]):
    """Plan billed by an invoice line; newer API versions nest the price under ``pricing``."""
    price = line.get("price")
    if isinstance(price, dict):
        price_id = price.get("id")
    else:
        price_id = ((line.get("pricing") or {}).get("price_details") or {}).get("price")
    return parse_plan(price_plan_map.get(price_id)) if price_id else None


def _stripe_subscription_updated(
    subscription: Dict[str, Any],
    now: datetime,
    price_plan_map: Dict[str, str],
) -> ProviderOutcome:
    metadata = subscription.get("metadata") or {}
    status = map_provider_status(PaymentProvider.STRIPE, subscription.get("status"))

    # The active price is authoritative for the current plan
    price_plan = _stripe_subscription_price_plan(subscription, price_plan_map)
    metadata_plan = parse_plan(metadata.get("plan"))
    plan = price_plan or metadata_plan
    scheduled_plan = None

    if subscription.get("cancel_at_period_end"):
        status = SubscriptionStatus.CANCELING.value
    elif (
        metadata.get("scheduledDowngrade") == "true"
        and metadata_plan is not None
        and price_plan is not None
        and status == SubscriptionStatus.ACTIVE.value
    ):
        if plan_rank(metadata_plan) < plan_rank(price_plan):
            status = SubscriptionStatus.DOWNGRADING.value
            scheduled_plan = metadata_plan
        elif metadata_plan == price_plan:
            # The lower price is already on the subscription but is first
            # billed at the next invoice; the paid-for plan stays until then.
            status = SubscriptionStatus.DOWNGRADING.value
            scheduled_plan = metadata_plan
            plan = None

    return ProviderOutcome(
        event=BillingEvent.PROVIDER_UPDATED,
        occurred_at=now,
        plan=plan,
        scheduled_plan=scheduled_plan,
        status=status,
        period_end=_stripe_subscription_period_end(subscription),
        provider=PaymentProvider.STRIPE,
        customer_ref=_ref(subscription.get("customer")),
        subscription_ref=subscription.get("id"),
    )


def translate_stripe_event(
    payload: Dict[str, Any],
    now: datetime,
    price_plan_map: Optional[Dict[str, str]] = None,
) -> ProviderEvent:
    """Translate a verified Stripe event."""
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise ValidationError("Stripe event is missing id or type")

    obj = (payload.get("data") or {}).get("object") or {}
    price_plan_map = price_plan_map or {}
    event = ProviderEvent(
        event_id=event_id,
        event_type=event_type,
        provider=PaymentProvider.STRIPE,
    )

    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        event.user_id = _metadata_user_id(metadata)
        event.email = obj.get("customer_email") or (obj.get("customer_details") or {}).get("email")
        event.customer_ref = _ref(obj.get("customer"))
        event.subscription_ref = _ref(obj.get("subscription"))
        event.outcome = ProviderOutcome(
            event=BillingEvent.PAYMENT_SUCCEEDED,
            occurred_at=now,
            plan=parse_plan(metadata.get("plan")),
            provider=PaymentProvider.STRIPE,
            customer_ref=event.customer_ref,
            subscription_ref=event.subscription_ref,
        )

    elif event_type == "invoice.payment_succeeded":
        lines = (obj.get("lines") or {}).get("data") or []
        period_end = _from_epoch((lines[0].get("period") or {}).get("end")) if lines else None
        event.user_id = _stripe_invoice_user_id(obj)
        event.customer_ref = _ref(obj.get("customer"))
        event.subscription_ref = _stripe_invoice_subscription(obj)
        event.outcome = ProviderOutcome(
            event=BillingEvent.PAYMENT_SUCCEEDED,
            occurred_at=now,
            # A scheduled downgrade takes effect with the first invoice at the lower price
            plan=_stripe_invoice_line_plan(lines[0], price_plan_map) if lines else None,
            period_end=period_end,
            provider=PaymentProvider.STRIPE,
            customer_ref=event.customer_ref,
            subscription_ref=event.subscription_ref,
        )

    elif event_type == "invoice.payment_failed":
        event.user_id = _stripe_invoice_user_id(obj)
        event.customer_ref = _ref(obj.get("customer"))
        event.subscription_ref = _stripe_invoice_subscription(obj)
        if event.subscription_ref:
            event.outcome = ProviderOutcome(
                event=BillingEvent.PAYMENT_FAILED,
                occurred_at=now,
                provider=PaymentProvider.STRIPE,
            )
        else:
            logger.info(f"Ignoring Stripe invoice failure {event_id} without a subscription")

    elif event_type == "customer.subscription.updated":
        event.user_id = _metadata_user_id(obj.get("metadata"))
        event.customer_ref = _ref(obj.get("customer"))
        event.subscription_ref = obj.get("id")
        event.outcome = _stripe_subscription_updated(obj, now, price_plan_map)

    elif event_type == "customer.subscription.deleted":
        event.user_id = _metadata_user_id(obj.get("metadata"))
        event.customer_ref = _ref(obj.get("customer"))
        event.subscription_ref = obj.get("id")
        event.outcome = ProviderOutcome(
            event=BillingEvent.PROVIDER_DELETED,
            occurred_at=now,
            provider=PaymentProvider.STRIPE,
        )

    return event


# =============================================================================
# Paystack
# =============================================================================

def paystack_event_id(event_type: str, data: Dict[str, Any]) -> str:
    """
    Paystack payloads carry no event ID; derive one from the event type and
    the most specific identifier the payload has.
    """
    for key in ("reference", "invoice_code", "subscription_code", "id"):
        value = data.get(key)
        if value:
            return f"{event_type}:{value}"
    raise ValidationError(f"Paystack {event_type} event has no identifying reference")


def translate_paystack_event(payload: Dict[str, Any], now: datetime) -> ProviderEvent:
    """Translate a verified Paystack event."""
    event_type = payload.get("event")
    data = payload.get("data")
    if not event_type or not isinstance(data, dict):
        raise ValidationError("Paystack event is missing event or data")

    customer = data.get("customer") or {}
    event = ProviderEvent(
        event_id=paystack_event_id(event_type, data),
        event_type=event_type,
        provider=PaymentProvider.PAYSTACK,
        customer_ref=customer.get("customer_code"),
        email=customer.get("email"),
    )

    if event_type == "charge.success":
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            metadata = {}
        authorization = data.get("authorization") or {}
        token = authorization.get("authorization_code") if authorization.get("reusable", True) else None
        event.user_id = _metadata_user_id(metadata)

        if metadata.get("type") in SWEEP_CHARGE_TYPES:
            # The sweep already applied this charge; only refresh stored refs
            event.outcome = ProviderOutcome(
                event=BillingEvent.PROVIDER_UPDATED,
                occurred_at=now,
                provider=PaymentProvider.PAYSTACK,
                authorization_token=token,
                customer_ref=event.customer_ref,
            )
        else:
            event.outcome = ProviderOutcome(
                event=BillingEvent.PAYMENT_SUCCEEDED,
                occurred_at=now,
                plan=parse_plan(metadata.get("plan")),
                provider=PaymentProvider.PAYSTACK,
                authorization_token=token,
                customer_ref=event.customer_ref,
            )

    elif event_type == "subscription.create":
        event.subscription_ref = data.get("subscription_code")
        event.outcome = ProviderOutcome(
            event=BillingEvent.PROVIDER_UPDATED,
            occurred_at=now,
            plan=parse_plan((data.get("plan") or {}).get("name")),
            status=map_provider_status(PaymentProvider.PAYSTACK, data.get("status") or "active"),
            period_end=_from_iso(data.get("next_payment_date")),
            provider=PaymentProvider.PAYSTACK,
            authorization_token=(data.get("authorization") or {}).get("authorization_code"),
            customer_ref=event.customer_ref,
            subscription_ref=event.subscription_ref,
        )

    elif event_type in ("subscription.disable", "subscription.not_renew"):
        event.subscription_ref = data.get("subscription_code")
        event.outcome = ProviderOutcome(
            event=BillingEvent.PROVIDER_DELETED,
            occurred_at=now,
            provider=PaymentProvider.PAYSTACK,
        )

    elif event_type == "invoice.payment_failed":
        event.subscription_ref = (data.get("subscription") or {}).get("subscription_code")
        event.outcome = ProviderOutcome(
            event=BillingEvent.PAYMENT_FAILED,
            occurred_at=now,
            provider=PaymentProvider.PAYSTACK,
        )

    return event


def translate_event(
    provider: PaymentProvider,
    payload: Dict[str, Any],
    now: datetime,
    price_plan_map: Optional[Dict[str, str]] = None,
) -> ProviderEvent:
    """
    Translate a verified payload from ``provider``.

    Raises:
        ValidationError: the payload is signed but not shaped like the
            provider's events, so a retry cannot succeed
    """
    try:
        if provider == PaymentProvider.STRIPE:
            return translate_stripe_event(payload, now, price_plan_map)
        return translate_paystack_event(payload, now)
    except ValidationError:
        raise
    except (AttributeError, TypeError, ValueError, KeyError, IndexError) as e:
        logger.warning(f"Malformed {provider.value} webhook payload: {e}")
        raise ValidationError(
            f"Malformed {provider.value} webhook payload",
            original_error=e,
        ) from e
