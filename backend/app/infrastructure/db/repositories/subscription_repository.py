"""
Subscription Repository

Data access layer for subscription persistence.
Follows Repository pattern for Clean Architecture.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import and_, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.domain.subscription import (
    Plan,
    PaymentProvider,
    Subscription,
    SubscriptionChange,
    SubscriptionStatus,
)
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.exceptions import DatabaseError, NotFoundError


logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Repository for subscription data access.

    Bound to the caller's session so reads and writes join the caller's
    transaction. Maps between the table model and the domain entity.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        return self._session

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_user_id(self, user_id: str) -> Optional[Subscription]:
        """
        Get subscription by user ID.

        Args:
            user_id: Internal user ID

        Returns:
            Subscription domain model or None
        """
        statement = select(SubscriptionModel).where(SubscriptionModel.user_id == user_id)
        return await self._fetch_one(statement, "get_by_user_id")

    async def get_by_customer_ref(
        self,
        provider: PaymentProvider,
        customer_ref: str,
    ) -> Optional[Subscription]:
        """Get subscription by the provider's customer reference."""
        statement = select(SubscriptionModel).where(
            SubscriptionModel.payment_provider == provider.value,
            SubscriptionModel.provider_customer_ref == customer_ref,
        )
        return await self._fetch_one(statement, "get_by_customer_ref")

    async def get_by_subscription_ref(
        self,
        provider: PaymentProvider,
        subscription_ref: str,
    ) -> Optional[Subscription]:
        """Get subscription by the provider's subscription reference."""
        statement = select(SubscriptionModel).where(
            SubscriptionModel.payment_provider == provider.value,
            SubscriptionModel.provider_subscription_ref == subscription_ref,
        )
        return await self._fetch_one(statement, "get_by_subscription_ref")

    async def list_due_for_renewal(self, now: datetime, limit: int) -> List[Subscription]:
        """
        Paid subscriptions whose period has ended at ``now`` and that the
        sweep can act on (same rule as ``Subscription.is_sweepable``).

        Oldest periods first; capped at ``limit`` rows per call.
        """
        model = SubscriptionModel
        not_provider_billed = or_(
            model.payment_provider.is_(None),
            model.payment_provider != PaymentProvider.STRIPE.value,
            model.provider_subscription_ref.is_(None),
        )
        statement = (
            select(model)
            .where(
                model.plan != Plan.FREE.value,
                model.current_period_end.is_not(None),
                model.current_period_end <= now,
                or_(
                    model.status == SubscriptionStatus.CANCELING.value,
                    and_(
                        not_provider_billed,
                        or_(
                            model.status.in_([
                                SubscriptionStatus.ACTIVE.value,
                                SubscriptionStatus.DOWNGRADING.value,
                            ]),
                            and_(
                                model.status == SubscriptionStatus.PAST_DUE.value,
                                model.payment_authorization_token.is_not(None),
                            ),
                        ),
                    ),
                ),
            )
            .order_by(SubscriptionModel.current_period_end)
            .limit(limit)
        )
        try:
            result = await self._session.execute(statement)
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to list subscriptions due for renewal",
                operation="list_due_for_renewal",
                table="subscriptions",
                original_error=e,
            ) from e
        return [self._to_domain(model) for model in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def apply_change(self, user_id: str, change: SubscriptionChange) -> Subscription:
        """
        Write the fields a state-machine change sets; leave the rest alone.

        Raises:
            NotFoundError: no subscription for ``user_id``
        """
        values = {
            field: (value.value if hasattr(value, "value") else value)
            for field, value in change.model_dump(exclude_unset=True).items()
        }
        values["updated_at"] = utcnow()

        statement = (
            update(SubscriptionModel)
            .where(SubscriptionModel.user_id == user_id)
            .values(**values)
            .returning(SubscriptionModel)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._session.execute(statement)
            model = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to update subscription for user {user_id}",
                operation="apply_change",
                table="subscriptions",
                original_error=e,
            ) from e

        if model is None:
            raise NotFoundError(
                f"Subscription not found for user {user_id}",
                operation="apply_change",
                table="subscriptions",
            )

        logger.info(f"Updated subscription for user {user_id}: {sorted(values)}")
        return self._to_domain(model)

    async def increment_session_version(self, user_id: str) -> int:
        """
        Atomically bump session_version, invalidating issued tokens.

        A single UPDATE ... SET session_version = session_version + 1 takes
        the row lock, so concurrent invalidations are never lost.
        """
        statement = (
            update(SubscriptionModel)
            .where(SubscriptionModel.user_id == user_id)
            .values(
                session_version=SubscriptionModel.session_version + 1,
                updated_at=utcnow(),
            )
            .returning(SubscriptionModel.session_version)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._session.execute(statement)
            version = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to increment session version for user {user_id}",
                operation="increment_session_version",
                table="subscriptions",
                original_error=e,
            ) from e

        if version is None:
            raise NotFoundError(
                f"Subscription not found for user {user_id}",
                operation="increment_session_version",
                table="subscriptions",
            )
        return version

    async def get_or_create_free(
        self,
        user_id: str,
        email: Optional[str] = None,
    ) -> Subscription:
        """
        Get existing subscription or create a Free plan row.

        Uses INSERT ... ON CONFLICT DO NOTHING so concurrent first requests
        converge on the same row.
        """
        now = utcnow()
        statement = pg_insert(SubscriptionModel).values(
            id=uuid4(),
            user_id=user_id,
            status=SubscriptionStatus.ACTIVE.value,
            plan=Plan.FREE.value,
            email=email,
            session_version=1,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["user_id"])
        try:
            await self._session.execute(statement)
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to create subscription for user {user_id}",
                operation="get_or_create_free",
                table="subscriptions",
                original_error=e,
            ) from e

        subscription = await self.get_by_user_id(user_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription not found for user {user_id}",
                operation="get_or_create_free",
                table="subscriptions",
            )
        return subscription

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    async def _fetch_one(self, statement, operation: str) -> Optional[Subscription]:
        try:
            result = await self._session.execute(statement)
            model = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to read subscription",
                operation=operation,
                table="subscriptions",
                original_error=e,
            ) from e

        if model:
            return self._to_domain(model)
        return None

    @staticmethod
    def _to_domain(model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=str(model.id),
            user_id=model.user_id,
            status=SubscriptionStatus(model.status),
            plan=Plan(model.plan),
            scheduled_plan=Plan(model.scheduled_plan) if model.scheduled_plan else None,
            current_period_end=model.current_period_end,
            payment_provider=(
                PaymentProvider(model.payment_provider) if model.payment_provider else None
            ),
            payment_authorization_token=model.payment_authorization_token,
            provider_customer_ref=model.provider_customer_ref,
            provider_subscription_ref=model.provider_subscription_ref,
            email=model.email,
            name=model.name,
            session_version=model.session_version or 1,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
