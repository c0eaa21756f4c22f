"""
Billing Unit of Work

Groups the billing repositories behind one session so a webhook's dedup
record and its subscription update, or one subscription's renewal, commit
or roll back as a single transaction.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.webhook_event_repository import WebhookEventRepository


class BillingUnitOfWork:
    """Repositories sharing one transactional session."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.subscriptions = SubscriptionRepository(session)
        self.webhook_events = WebhookEventRepository(session)


@asynccontextmanager
async def billing_unit_of_work() -> AsyncGenerator[BillingUnitOfWork, None]:
    """
    Open a transaction for one unit of billing work.

    Usage:
        async with billing_unit_of_work() as uow:
            await uow.subscriptions.apply_change(user_id, change)
    """
    async with get_session_context() as session:
        yield BillingUnitOfWork(session)
