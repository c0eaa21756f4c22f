"""
Repository Layer for the Billing Reconciler

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)


__all__ = [
    "SubscriptionRepository",
    "WebhookEventRepository",
]
