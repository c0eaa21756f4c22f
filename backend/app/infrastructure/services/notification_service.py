"""
Billing Notification Service

Sends subscription lifecycle emails through Resend. Delivery is
fire-and-forget: failures are logged and never reach the billing flow.
"""

import asyncio
import logging
from typing import Optional

import resend

from app.config.settings import get_settings
from app.domain.interfaces import Notifier
from app.domain.subscription import NotificationKind


logger = logging.getLogger(__name__)


SUBJECTS = {
    NotificationKind.SUBSCRIPTION_RENEWED: "Your subscription has been renewed",
    NotificationKind.SUBSCRIPTION_ACTIVATED: "Your subscription is active",
    NotificationKind.SUBSCRIPTION_CANCELLED: "Your subscription has ended",
    NotificationKind.CANCELLATION_SCHEDULED: "Your subscription will not renew",
    NotificationKind.PLAN_DOWNGRADED: "Your plan has changed",
    NotificationKind.DOWNGRADE_SCHEDULED: "Your plan change is scheduled",
    NotificationKind.PAYMENT_FAILED: "We couldn't process your payment",
}

BODIES = {
    NotificationKind.SUBSCRIPTION_RENEWED: "Your {plan} subscription renewed successfully.",
    NotificationKind.SUBSCRIPTION_ACTIVATED: "Your {plan} subscription is now active.",
    NotificationKind.SUBSCRIPTION_CANCELLED: "Your subscription has ended and your account is now on the Free plan.",
    NotificationKind.CANCELLATION_SCHEDULED: "Your {plan} subscription will stay active until the end of the current billing period.",
    NotificationKind.PLAN_DOWNGRADED: "Your account is now on the {plan} plan.",
    NotificationKind.DOWNGRADE_SCHEDULED: "Your account will move to the {plan} plan at the end of the current billing period.",
    NotificationKind.PAYMENT_FAILED: "We couldn't charge your payment method for your {plan} subscription. Please update your payment details.",
}


def render_email(kind: NotificationKind, name: Optional[str], plan: Optional[str]) -> str:
    greeting = f"Hi {name}," if name else "Hi,"
    body = BODIES[kind].format(plan=plan or "current")
    return f"<p>{greeting}</p><p>{body}</p>"


class ResendNotifier(Notifier):
    """Notifier backed by the Resend email API."""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        settings = get_settings()
        self._api_key = api_key or settings.resend_api_key
        self._from_email = from_email or settings.resend_from_email

    async def notify(
        self,
        user_id: str,
        kind: NotificationKind,
        email: Optional[str] = None,
        name: Optional[str] = None,
        plan: Optional[str] = None,
    ) -> None:
        if not self._api_key:
            logger.debug(f"Resend not configured, skipping {kind.value} for user {user_id}")
            return
        if not email:
            logger.warning(f"No email on file for user {user_id}, skipping {kind.value}")
            return

        resend.api_key = self._api_key
        params = {
            "from": self._from_email,
            "to": [email],
            "subject": SUBJECTS[kind],
            "html": render_email(kind, name, plan),
        }

        try:
            # The Resend SDK is synchronous
            result = await asyncio.to_thread(resend.Emails.send, params)
            logger.info(f"Sent {kind.value} email to user {user_id}: {result.get('id')}")
        except Exception as e:
            logger.error(f"Failed to send {kind.value} email to user {user_id}: {e}")


# =============================================================================
# Singleton Instance
# =============================================================================

_notifier_instance: Optional[ResendNotifier] = None


def get_notifier() -> ResendNotifier:
    """Get or create the notifier singleton."""
    global _notifier_instance

    if _notifier_instance is None:
        _notifier_instance = ResendNotifier()

    return _notifier_instance
