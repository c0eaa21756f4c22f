"""
Billing Reconciliation Orchestrator

Drives the subscription state machine from its two triggers:

- the renewal cron sweep (charges due subscriptions, lapses cancellations)
- payment-provider webhooks (applies provider-reported facts)

plus the user-initiated cancel / plan-change requests and session
invalidation. All persistence goes through a BillingUnitOfWork; each
subscription in a sweep and each webhook delivery gets its own
transaction, so one failure never rolls back another's work.
"""

import logging
from datetime import datetime, timedelta
from typing import AsyncContextManager, Callable, Dict, List, Optional, Tuple

from app.config.settings import Settings, get_settings
from app.domain.interfaces import Notifier, PaymentGateway, ProviderSubscriptionSync
from app.domain.state_machine import (
    BillingEvent,
    ProviderOutcome,
    RenewalAction,
    plan_renewal,
    transition,
)
from app.domain.subscription import (
    NotificationKind,
    PaymentProvider,
    Plan,
    Subscription,
    SubscriptionStatus,
    SweepResult,
    SweepStatus,
    WebhookResult,
    get_plan_price_cents,
    is_paid_plan,
    plan_rank,
)
from app.infrastructure.db.models.base import utcnow
from app.infrastructure.db.unit_of_work import BillingUnitOfWork, billing_unit_of_work
from app.infrastructure.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from app.infrastructure.payments.paystack_service import get_paystack_service
from app.infrastructure.payments.stripe_service import get_stripe_service
from app.infrastructure.payments.webhook_translator import ProviderEvent, translate_event
from app.infrastructure.services.notification_service import get_notifier
from app.infrastructure.services.run_coordinator import RunAdmission, RunCoordinator


logger = logging.getLogger(__name__)

UnitOfWorkFactory = Callable[[], AsyncContextManager[BillingUnitOfWork]]
PendingNotification = Tuple[NotificationKind, Subscription, Optional[str]]


def generate_reference(purpose: str, subscription_id: str, run_at: datetime) -> str:
    """
    Charge reference unique per attempt.

    Retries of the same attempt reuse it, so it doubles as the gateway
    idempotency key. The full subscription id keeps references from two
    subscriptions charged in the same run apart.
    """
    epoch_ms = int(run_at.timestamp() * 1000)
    return f"{purpose}_{subscription_id}_{epoch_ms}"


class BillingOrchestrator:
    """
    Sole writer of subscription status and billing period.

    Collaborators are injected so tests can substitute in-memory fakes.
    """

    def __init__(
        self,
        unit_of_work_factory: UnitOfWorkFactory,
        gateways: Dict[PaymentProvider, PaymentGateway],
        notifier: Notifier,
        coordinator: Optional[RunCoordinator] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        price_plan_map: Optional[Dict[str, str]] = None,
    ):
        self._uow_factory = unit_of_work_factory
        self._gateways = gateways
        self._notifier = notifier
        self._coordinator = coordinator or RunCoordinator()
        self._settings = settings or get_settings()
        self._clock = clock
        self._price_plan_map = price_plan_map or {}

    @property
    def coordinator(self) -> RunCoordinator:
        return self._coordinator

    @property
    def billing_cycle(self) -> timedelta:
        return timedelta(days=self._settings.billing_cycle_days)

    def compute_charge_amount(self, plan: Plan) -> int:
        """Plan price converted into minor units of the charge currency."""
        return round(get_plan_price_cents(plan) * self._settings.usd_exchange_rate)

    def _gateway_for(self, provider: Optional[PaymentProvider]) -> PaymentGateway:
        gateway = self._gateways.get(provider) if provider else None
        if gateway is None:
            raise ConfigurationError(
                f"No payment gateway configured for provider {provider}",
            )
        return gateway

    # =========================================================================
    # Cron Sweep
    # =========================================================================

    async def run_billing_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Renew, downgrade or lapse every due paid subscription.

        Returns a "skipped" result when the run coordinator refuses entry.
        Per-subscription failures are recorded in the result, never raised.
        """
        now = now or self._clock()
        admission = self._coordinator.acquire(now, self._settings.billing_cron_min_interval_seconds)
        if admission != RunAdmission.ADMITTED:
            logger.warning(f"Billing sweep skipped: {admission.value}")
            return SweepResult(status=SweepStatus.SKIPPED, reason=admission.value)

        result = SweepResult()
        try:
            async with self._uow_factory() as uow:
                candidates = await uow.subscriptions.list_due_for_renewal(
                    now, self._settings.billing_max_candidates_per_run
                )
            logger.info(f"Billing sweep found {len(candidates)} due subscriptions")

            processed_this_run = set()
            for candidate in candidates:
                key = candidate.id or candidate.user_id
                if key in processed_this_run:
                    logger.warning(f"Skipping duplicate candidate {key} in this run")
                    continue
                processed_this_run.add(key)

                try:
                    await self._renew_subscription(candidate.user_id, now, result)
                except Exception as e:
                    logger.error(f"Billing failed for user {candidate.user_id}: {e}", exc_info=True)
                    result.failed += 1
                    self._record_error(result, candidate.user_id, str(e))
        finally:
            self._coordinator.release()

        logger.info(
            f"Billing sweep complete: processed={result.processed} renewed={result.renewed} "
            f"cancelled={result.cancelled} failed={result.failed} skipped={result.skipped}"
        )
        return result

    def _record_error(self, result: SweepResult, user_id: str, message: str) -> None:
        if len(result.errors) < self._settings.billing_max_error_entries:
            result.errors.append(f"{user_id}: {message}")

    async def _renew_subscription(self, user_id: str, now: datetime, result: SweepResult) -> None:
        notifications: List[PendingNotification] = []

        async with self._uow_factory() as uow:
            subscription = await uow.subscriptions.get_by_user_id(user_id)
            # Re-check against the fresh row; the candidate list may be stale
            if subscription is None or not subscription.is_sweepable(now):
                result.skipped += 1
                return

            renewal = plan_renewal(subscription)
            if renewal.action == RenewalAction.SKIP:
                result.skipped += 1
                return

            result.processed += 1

            if renewal.action == RenewalAction.CANCEL:
                change = transition(
                    subscription,
                    ProviderOutcome(event=BillingEvent.PERIOD_ELAPSED, occurred_at=now),
                    self.billing_cycle,
                )
                await uow.subscriptions.apply_change(user_id, change)
                result.cancelled += 1
                notifications.append(
                    (NotificationKind.SUBSCRIPTION_CANCELLED, subscription, subscription.plan.value)
                )
                logger.info(f"Subscription for user {user_id} lapsed to Free")

            elif renewal.action == RenewalAction.MARK_PAST_DUE:
                change = transition(
                    subscription,
                    ProviderOutcome(event=BillingEvent.AUTHORIZATION_MISSING, occurred_at=now),
                    self.billing_cycle,
                )
                await uow.subscriptions.apply_change(user_id, change)
                result.failed += 1
                self._record_error(result, user_id, "No authorization")
                logger.warning(f"User {user_id} has no payment authorization; marked past_due")

            else:
                succeeded = await self._charge(subscription, renewal.charge_plan, renewal.purpose, now)
                event = BillingEvent.RENEWAL_SUCCEEDED if succeeded else BillingEvent.RENEWAL_FAILED
                change = transition(
                    subscription,
                    ProviderOutcome(event=event, occurred_at=now, plan=renewal.charge_plan),
                    self.billing_cycle,
                )
                await uow.subscriptions.apply_change(user_id, change)

                plan_name = renewal.charge_plan.value
                if succeeded:
                    result.renewed += 1
                    kind = (
                        NotificationKind.PLAN_DOWNGRADED
                        if renewal.charge_plan != subscription.plan
                        else NotificationKind.SUBSCRIPTION_RENEWED
                    )
                    notifications.append((kind, subscription, plan_name))
                else:
                    result.failed += 1
                    self._record_error(result, user_id, f"{renewal.purpose} charge failed")
                    notifications.append((NotificationKind.PAYMENT_FAILED, subscription, plan_name))

        await self._send(notifications)

    async def _charge(
        self,
        subscription: Subscription,
        plan: Plan,
        purpose: str,
        now: datetime,
    ) -> bool:
        """Charge the stored authorization; gateway errors count as a failed charge."""
        gateway = self._gateway_for(subscription.payment_provider)
        reference = generate_reference(purpose, subscription.id or subscription.user_id, now)
        amount = self.compute_charge_amount(plan)

        logger.info(
            f"Charging user {subscription.user_id} for {plan.value}: "
            f"{amount} {self._settings.charge_currency} ({reference})"
        )
        try:
            charge = await gateway.charge(
                authorization_token=subscription.payment_authorization_token,
                amount_minor_units=amount,
                idempotency_ref=reference,
                metadata={
                    "user_id": subscription.user_id,
                    "plan": plan.value,
                    "type": purpose,
                },
                customer_ref=subscription.provider_customer_ref,
                email=subscription.email,
            )
        except PaymentGatewayError as e:
            logger.error(f"Gateway error charging user {subscription.user_id}: {e}")
            return False

        return charge.succeeded

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_webhook(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        provider: PaymentProvider,
    ) -> WebhookResult:
        """
        Verify, dedupe and apply one webhook delivery.

        The dedup record and the subscription update share one transaction:
        a failure rolls back both so the provider's retry is processed, and
        a committed delivery is never applied twice.
        """
        gateway = self._gateway_for(provider)
        payload = gateway.verify_signature(raw_payload, signature)

        now = self._clock()
        event = translate_event(provider, payload, now, self._price_plan_map)
        notifications: List[PendingNotification] = []

        async with self._uow_factory() as uow:
            admitted = await uow.webhook_events.admit(event.event_id, provider, event.event_type)
            if not admitted:
                logger.info(f"Duplicate {provider.value} webhook ignored: {event.event_id}")
                return WebhookResult(duplicate=True, event_type=event.event_type)

            if event.outcome is None:
                logger.info(f"Unhandled {provider.value} webhook type: {event.event_type}")
                return WebhookResult(event_type=event.event_type)

            subscription = await self._locate_subscription(uow, event)
            if subscription is None:
                logger.warning(
                    f"No subscription found for {provider.value} {event.event_type} "
                    f"{event.event_id}"
                )
                return WebhookResult(event_type=event.event_type)

            try:
                change = transition(subscription, event.outcome, self.billing_cycle)
            except InvalidTransitionError as e:
                logger.warning(f"Ignoring {event.event_type} for user {subscription.user_id}: {e}")
                return WebhookResult(event_type=event.event_type)

            if not change.is_empty():
                updated = await uow.subscriptions.apply_change(subscription.user_id, change)
                notification = self._webhook_notification(subscription, updated, event)
                if notification:
                    notifications.append(notification)

        logger.info(f"Processed {provider.value} webhook {event.event_type} ({event.event_id})")
        await self._send(notifications)
        return WebhookResult(event_type=event.event_type)

    async def _locate_subscription(
        self,
        uow: BillingUnitOfWork,
        event: ProviderEvent,
    ) -> Optional[Subscription]:
        if event.user_id:
            if event.outcome.event == BillingEvent.PAYMENT_SUCCEEDED:
                return await uow.subscriptions.get_or_create_free(event.user_id, event.email)
            subscription = await uow.subscriptions.get_by_user_id(event.user_id)
            if subscription:
                return subscription
        if event.subscription_ref:
            subscription = await uow.subscriptions.get_by_subscription_ref(
                event.provider, event.subscription_ref
            )
            if subscription:
                return subscription
        if event.customer_ref:
            return await uow.subscriptions.get_by_customer_ref(event.provider, event.customer_ref)
        return None

    @staticmethod
    def _webhook_notification(
        before: Subscription,
        after: Subscription,
        event: ProviderEvent,
    ) -> Optional[PendingNotification]:
        outcome = event.outcome.event
        if outcome == BillingEvent.PAYMENT_SUCCEEDED and (
            before.status != after.status or before.plan != after.plan
        ):
            return NotificationKind.SUBSCRIPTION_ACTIVATED, after, after.plan.value
        if outcome == BillingEvent.PROVIDER_DELETED and is_paid_plan(before.plan):
            return NotificationKind.SUBSCRIPTION_CANCELLED, after, before.plan.value
        if outcome == BillingEvent.PAYMENT_FAILED and before.status != SubscriptionStatus.PAST_DUE:
            return NotificationKind.PAYMENT_FAILED, after, after.plan.value
        return None

    async def purge_webhook_events(self, now: Optional[datetime] = None) -> int:
        """Delete dedup records older than the retention window."""
        now = now or self._clock()
        cutoff = now - timedelta(days=self._settings.webhook_event_retention_days)
        async with self._uow_factory() as uow:
            return await uow.webhook_events.purge_older_than(cutoff)

    # =========================================================================
    # User-Initiated Changes
    # =========================================================================

    async def get_subscription(self, user_id: str) -> Subscription:
        """Current subscription, creating a Free row on first access."""
        async with self._uow_factory() as uow:
            return await uow.subscriptions.get_or_create_free(user_id)

    async def request_cancellation(self, user_id: str) -> Subscription:
        """
        Schedule cancellation at period end.

        Raises:
            NotFoundError: user has no subscription
            InvalidTransitionError: nothing paid to cancel
        """
        async with self._uow_factory() as uow:
            subscription = await self._require_subscription(uow, user_id)
            change = transition(
                subscription,
                ProviderOutcome(event=BillingEvent.CANCEL_REQUESTED, occurred_at=self._clock()),
                self.billing_cycle,
            )
            sync = self._provider_sync_for(subscription)
            if sync is not None:
                await sync.cancel_at_period_end(subscription.provider_subscription_ref)
            updated = await uow.subscriptions.apply_change(user_id, change)

        logger.info(f"Cancellation scheduled for user {user_id}")
        await self._send([(NotificationKind.CANCELLATION_SCHEDULED, updated, updated.plan.value)])
        return updated

    async def request_plan_change(self, user_id: str, target_plan: Plan) -> Subscription:
        """
        Schedule a downgrade to ``target_plan`` at period end.

        Upgrades are rejected; they go through checkout and arrive as webhooks.

        Raises:
            ValidationError: already on ``target_plan``
            InvalidTransitionError: upgrade or invalid source status
        """
        async with self._uow_factory() as uow:
            subscription = await self._require_subscription(uow, user_id)
            if target_plan == subscription.plan:
                raise ValidationError(f"Already on the {target_plan.value} plan")
            if plan_rank(target_plan) > plan_rank(subscription.plan):
                raise InvalidTransitionError(
                    f"Upgrade to {target_plan.value} requires checkout",
                    status=subscription.status.value,
                    event=BillingEvent.DOWNGRADE_REQUESTED.value,
                )

            change = transition(
                subscription,
                ProviderOutcome(
                    event=BillingEvent.DOWNGRADE_REQUESTED,
                    occurred_at=self._clock(),
                    plan=target_plan,
                ),
                self.billing_cycle,
            )
            sync = self._provider_sync_for(subscription)
            if sync is not None:
                await sync.schedule_downgrade(
                    subscription.provider_subscription_ref, target_plan, user_id
                )
            updated = await uow.subscriptions.apply_change(user_id, change)

        logger.info(f"Downgrade to {target_plan.value} scheduled for user {user_id}")
        await self._send([(NotificationKind.DOWNGRADE_SCHEDULED, updated, target_plan.value)])
        return updated

    async def invalidate_sessions(self, user_id: str) -> int:
        """Bump session_version so every issued token stops validating."""
        async with self._uow_factory() as uow:
            version = await uow.subscriptions.increment_session_version(user_id)
        logger.info(f"Invalidated sessions for user {user_id} (version {version})")
        return version

    def _provider_sync_for(self, subscription: Subscription) -> Optional[ProviderSubscriptionSync]:
        """Gateway to push a local change to, for provider-billed subscriptions."""
        if not subscription.is_provider_billed:
            return None
        gateway = self._gateway_for(subscription.payment_provider)
        if not isinstance(gateway, ProviderSubscriptionSync):
            raise ConfigurationError(
                f"{subscription.payment_provider.value} gateway cannot update subscriptions",
            )
        return gateway

    @staticmethod
    async def _require_subscription(uow: BillingUnitOfWork, user_id: str) -> Subscription:
        subscription = await uow.subscriptions.get_by_user_id(user_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription not found for user {user_id}",
                operation="get_by_user_id",
                table="subscriptions",
            )
        return subscription

    async def _send(self, notifications: List[PendingNotification]) -> None:
        for kind, subscription, plan in notifications:
            await self._notifier.notify(
                subscription.user_id,
                kind,
                email=subscription.email,
                name=subscription.name,
                plan=plan,
            )


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_billing_orchestrator_instance: Optional[BillingOrchestrator] = None


def get_billing_orchestrator() -> BillingOrchestrator:
    """Get or create the orchestrator wired to the real collaborators."""
    global _billing_orchestrator_instance

    if _billing_orchestrator_instance is None:
        stripe_service = get_stripe_service()
        _billing_orchestrator_instance = BillingOrchestrator(
            unit_of_work_factory=billing_unit_of_work,
            gateways={
                PaymentProvider.STRIPE: stripe_service,
                PaymentProvider.PAYSTACK: get_paystack_service(),
            },
            notifier=get_notifier(),
            price_plan_map=stripe_service.price_plan_map,
        )

    return _billing_orchestrator_instance
