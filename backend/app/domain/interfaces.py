"""
Billing Interfaces

Abstractions for the external collaborators the billing engine drives.
Follows Interface Segregation and Dependency Inversion principles.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from app.domain.subscription import NotificationKind, PaymentProvider, Plan


class ChargeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ChargeResult(BaseModel):
    """Result of a recurring charge against a stored authorization."""
    status: ChargeStatus
    reference: str
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == ChargeStatus.SUCCESS


class PaymentGateway(ABC):
    """A payment provider able to charge stored authorizations and sign webhooks."""

    provider: PaymentProvider

    @abstractmethod
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
        Charge a stored authorization.

        Declines are reported as a FAILED result; transport or provider
        errors raise PaymentGatewayError.
        """
        pass

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook signature, then parse the payload.

        Raises AuthenticationError for a missing or invalid signature and
        ValidationError for a payload that is not valid JSON.
        """
        pass


class Notifier(ABC):
    """Fire-and-forget user notifications."""

    @abstractmethod
    async def notify(
        self,
        user_id: str,
        kind: NotificationKind,
        email: Optional[str] = None,
        name: Optional[str] = None,
        plan: Optional[str] = None,
    ) -> None:
        """Send a notification. Implementations must not raise."""
        pass


class ProviderSubscriptionSync(ABC):
    """
    A provider that renews subscriptions on its own schedule.

    Local cancel / plan-change requests must be pushed to it, otherwise it
    keeps billing the old plan and its webhooks undo the local change.
    """

    @abstractmethod
    async def schedule_downgrade(self, subscription_ref: str, plan: Plan, user_id: str) -> None:
        """Switch the subscription to ``plan`` from the next billing period."""
        pass

    @abstractmethod
    async def cancel_at_period_end(self, subscription_ref: str) -> None:
        """Stop renewing the subscription once the current period ends."""
        pass
