"""
Stripe Payment Service

Infrastructure service for Stripe recurring charges and webhook verification.

- Off-session PaymentIntents against the customer's saved payment method
- Charge reference doubles as the Stripe idempotency key
- Webhook signatures verified before the payload is parsed
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe
from stripe import CardError, SignatureVerificationError, StripeError

from app.config.settings import get_settings
from app.domain.interfaces import (
    ChargeResult,
    ChargeStatus,
    PaymentGateway,
    ProviderSubscriptionSync,
)
from app.domain.subscription import PaymentProvider, Plan
from app.infrastructure.exceptions import (
    AuthenticationError,
    ConfigurationError,
    PaymentGatewayError,
    ValidationError,
)


logger = logging.getLogger(__name__)

# Seconds a signed webhook timestamp stays valid
WEBHOOK_TOLERANCE_SECONDS = 300


class StripeService(PaymentGateway, ProviderSubscriptionSync):
    """
    Stripe payment processing service.

    Stateless apart from the API credentials; safe to share across requests.
    """

    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
    ):
        """Initialize Stripe with API key from settings."""
        settings = get_settings()
        self._api_key = api_key or settings.stripe_secret_key
        self._webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._currency = (currency or settings.charge_currency).lower()

        if self._api_key:
            stripe.api_key = self._api_key

        # Price ID -> plan name, used to read the plan off subscription items
        self.price_plan_map = {
            price_id: plan
            for price_id, plan in (
                (settings.stripe_pro_price_id, "Pro"),
                (settings.stripe_plus_price_id, "Plus"),
            )
            if price_id
        }

    # =========================================================================
    # Recurring Charges
    # =========================================================================

    async def charge(
        self,
        authorization_token: str,
        amount_minor_units: int,
        idempotency_ref: str,
        metadata: Dict[str, Any],
        customer_ref: Optional[str] = None,
        email: Optional[str] = None,
    ) -> ChargeResult:
        """
        Confirm an off-session PaymentIntent for a saved payment method.

        Args:
            authorization_token: Stripe PaymentMethod ID
            amount_minor_units: Amount in the smallest currency unit
            idempotency_ref: Unique charge reference (also the idempotency key)
            metadata: Stored on the PaymentIntent
            customer_ref: Stripe customer ID owning the payment method
            email: Receipt email

        Returns:
            ChargeResult; card declines are a FAILED result, not an exception
        """
        self._require_api_key()

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor_units,
                currency=self._currency,
                customer=customer_ref,
                payment_method=authorization_token,
                off_session=True,
                confirm=True,
                receipt_email=email,
                metadata={**metadata, "reference": idempotency_ref},
                idempotency_key=idempotency_ref,
            )
        except CardError as e:
            logger.warning(f"Stripe declined charge {idempotency_ref}: {e.user_message}")
            return ChargeResult(
                status=ChargeStatus.FAILED,
                reference=idempotency_ref,
                raw={"code": e.code, "message": e.user_message},
            )
        except StripeError as e:
            logger.error(f"Stripe charge {idempotency_ref} failed: {e}")
            raise PaymentGatewayError(
                f"Stripe charge failed: {e.user_message or e}",
                provider=self.provider.value,
                operation="charge",
                original_error=e,
            ) from e

        status = ChargeStatus.SUCCESS if intent.status == "succeeded" else ChargeStatus.FAILED
        logger.info(
            f"Stripe charge {idempotency_ref} finished with intent "
            f"{intent.id} status={intent.status}"
        )
        return ChargeResult(
            status=status,
            reference=idempotency_ref,
            raw={"payment_intent": intent.id, "status": intent.status},
        )

    # =========================================================================
    # Subscription Management
    # =========================================================================

    def _require_api_key(self) -> None:
        if not self._api_key:
            raise ConfigurationError(
                "Stripe is not configured",
                missing_keys=["STRIPE_SECRET_KEY"],
            )

    def _get_price_id(self, plan: Plan) -> str:
        price_id = next(
            (price for price, name in self.price_plan_map.items() if name == plan.value),
            None,
        )
        if not price_id:
            raise ConfigurationError(
                f"No Stripe price configured for plan {plan.value}",
                missing_keys=[f"STRIPE_{plan.value.upper()}_PRICE_ID"],
            )
        return price_id

    async def schedule_downgrade(self, subscription_ref: str, plan: Plan, user_id: str) -> None:
        """
        Move the subscription to a lower plan from the next invoice.

        The current period is not prorated; the ``scheduledDowngrade``
        metadata keeps the row downgrading until the new price is billed.
        """
        self._require_api_key()
        price_id = self._get_price_id(plan)

        try:
            subscription = stripe.Subscription.retrieve(subscription_ref)
            item_id = subscription["items"]["data"][0]["id"]
            stripe.Subscription.modify(
                subscription_ref,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="none",
                billing_cycle_anchor="unchanged",
                metadata={
                    "userId": user_id,
                    "plan": plan.value,
                    "scheduledDowngrade": "true",
                },
            )
        except StripeError as e:
            logger.error(f"Failed to schedule downgrade for {subscription_ref}: {e}")
            raise PaymentGatewayError(
                f"Stripe plan change failed: {e.user_message or e}",
                provider=self.provider.value,
                operation="schedule_downgrade",
                original_error=e,
            ) from e

        logger.info(f"Scheduled Stripe downgrade of {subscription_ref} to {plan.value}")

    async def cancel_at_period_end(self, subscription_ref: str) -> None:
        """Cancel the subscription at the end of its billing period."""
        self._require_api_key()

        try:
            stripe.Subscription.modify(subscription_ref, cancel_at_period_end=True)
        except StripeError as e:
            logger.error(f"Failed to cancel subscription {subscription_ref}: {e}")
            raise PaymentGatewayError(
                f"Stripe cancellation failed: {e.user_message or e}",
                provider=self.provider.value,
                operation="cancel_at_period_end",
                original_error=e,
            ) from e

        logger.info(f"Stripe subscription {subscription_ref} set to cancel at period end")

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header, then parse the event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            Parsed event payload

        Raises:
            ConfigurationError if no webhook secret is configured
            AuthenticationError if the signature is missing or invalid
            ValidationError if the payload is not a JSON object
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )
        if not signature:
            raise AuthenticationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self._webhook_secret,
                WEBHOOK_TOLERANCE_SECONDS,
            )
        except UnicodeDecodeError as e:
            raise ValidationError("Webhook payload is not UTF-8", original_error=e) from e
        except SignatureVerificationError as e:
            raise AuthenticationError("Invalid Stripe signature", original_error=e) from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise ValidationError("Invalid webhook payload", original_error=e) from e
        if not isinstance(event, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        return event


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance
