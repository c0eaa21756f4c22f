"""
Webhook Event Repository

Durable admission gate for externally-triggered events. Admission is an
insert-if-absent against the (event_id, provider) unique constraint; it
joins the caller's transaction so the dedup row and the event's effect
commit or roll back together.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import PaymentProvider
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.webhook_event import WebhookEventModel
from app.infrastructure.exceptions import DatabaseError


logger = logging.getLogger(__name__)


class WebhookEventRepository:
    """Repository for webhook dedup records."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def admit(
        self,
        event_id: str,
        provider: PaymentProvider,
        event_type: Optional[str] = None,
    ) -> bool:
        """
        Record the first delivery of ``(event_id, provider)``.

        Returns:
            True if this call inserted the record, False if it already existed
        """
        statement = (
            pg_insert(WebhookEventModel)
            .values(
                id=uuid4(),
                event_id=event_id,
                provider=provider.value,
                event_type=event_type,
                processed_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["event_id", "provider"])
            .returning(WebhookEventModel.id)
        )
        try:
            result = await self._session.execute(statement)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to record webhook event {event_id}",
                operation="admit",
                table="webhook_events",
                original_error=e,
            ) from e
        return result.scalar_one_or_none() is not None

    async def purge_older_than(self, cutoff: datetime) -> int:
        """
        Delete dedup records processed before ``cutoff``.

        Returns:
            Number of records deleted
        """
        statement = delete(WebhookEventModel).where(WebhookEventModel.processed_at < cutoff)
        try:
            result = await self._session.execute(statement)
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to purge webhook events",
                operation="purge_older_than",
                table="webhook_events",
                original_error=e,
            ) from e
        deleted = result.rowcount or 0
        logger.info(f"Purged {deleted} webhook events processed before {cutoff.isoformat()}")
        return deleted
