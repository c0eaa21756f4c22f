"""
Test configuration and fixtures for the Billing Reconciler.

Provides in-memory fakes of the unit of work, payment gateways and
notifier, a controllable clock, and an app/client wired to them through
FastAPI dependency overrides.
"""

import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
import pytest
from fastapi.testclient import TestClient

from app.config.settings import Settings
from app.domain.interfaces import (
    ChargeResult,
    ChargeStatus,
    Notifier,
    PaymentGateway,
    ProviderSubscriptionSync,
)
from app.domain.subscription import (
    NotificationKind,
    PaymentProvider,
    Plan,
    Subscription,
    SubscriptionChange,
    SubscriptionStatus,
)
from app.infrastructure.exceptions import (
    AuthenticationError,
    NotFoundError,
    ValidationError,
)
from app.infrastructure.services.billing_orchestrator import BillingOrchestrator
from app.infrastructure.services.rate_limiter import RateLimiter
from app.infrastructure.services.run_coordinator import RunCoordinator


TEST_CRON_SECRET = "test-cron-secret"
TEST_JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Clock
# =============================================================================

class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# =============================================================================
# In-memory persistence
# =============================================================================

class FakeSubscriptionRepository:
    def __init__(self, store: "InMemoryBillingStore"):
        self._store = store

    async def get_by_user_id(self, user_id: str) -> Optional[Subscription]:
        self._store.reads.append(user_id)
        return self._store.subscriptions.get(user_id)

    async def get_by_customer_ref(self, provider, customer_ref):
        return next(
            (
                sub for sub in self._store.subscriptions.values()
                if sub.payment_provider == provider and sub.provider_customer_ref == customer_ref
            ),
            None,
        )

    async def get_by_subscription_ref(self, provider, subscription_ref):
        return next(
            (
                sub for sub in self._store.subscriptions.values()
                if sub.payment_provider == provider
                and sub.provider_subscription_ref == subscription_ref
            ),
            None,
        )

    async def list_due_for_renewal(self, now: datetime, limit: int) -> List[Subscription]:
        if self._store.candidates_override is not None:
            return list(self._store.candidates_override)
        due = [sub for sub in self._store.subscriptions.values() if sub.is_sweepable(now)]
        due.sort(key=lambda sub: sub.current_period_end)
        return due[:limit]

    async def apply_change(self, user_id: str, change: SubscriptionChange) -> Subscription:
        if user_id in self._store.fail_writes_for:
            raise RuntimeError(f"write failed for {user_id}")
        current = self._store.subscriptions.get(user_id)
        if current is None:
            raise NotFoundError(f"Subscription not found for user {user_id}")
        updated = change.apply_to(current)
        self._store.subscriptions[user_id] = updated
        return updated

    async def increment_session_version(self, user_id: str) -> int:
        current = self._store.subscriptions.get(user_id)
        if current is None:
            raise NotFoundError(f"Subscription not found for user {user_id}")
        updated = current.model_copy(update={"session_version": current.session_version + 1})
        self._store.subscriptions[user_id] = updated
        return updated.session_version

    async def get_or_create_free(self, user_id: str, email: Optional[str] = None) -> Subscription:
        if user_id not in self._store.subscriptions:
            self._store.subscriptions[user_id] = Subscription(
                id=f"{user_id}-subscription",
                user_id=user_id,
                email=email,
            )
        return self._store.subscriptions[user_id]


class FakeWebhookEventRepository:
    def __init__(self, store: "InMemoryBillingStore"):
        self._store = store

    async def admit(self, event_id: str, provider: PaymentProvider, event_type=None) -> bool:
        self._store.admit_calls.append((event_id, provider))
        key = (event_id, provider)
        if key in self._store.webhook_events:
            return False
        self._store.webhook_events[key] = self._store.clock()
        return True

    async def purge_older_than(self, cutoff: datetime) -> int:
        expired = [key for key, at in self._store.webhook_events.items() if at < cutoff]
        for key in expired:
            del self._store.webhook_events[key]
        return len(expired)


class FakeUnitOfWork:
    def __init__(self, store: "InMemoryBillingStore"):
        self.subscriptions = FakeSubscriptionRepository(store)
        self.webhook_events = FakeWebhookEventRepository(store)


class InMemoryBillingStore:
    """
    Dict-backed stand-in for the database.

    Each unit of work snapshots both tables and restores them if the block
    raises, mirroring a transaction rollback.
    """

    def __init__(self, clock: FrozenClock):
        self.clock = clock
        self.subscriptions: Dict[str, Subscription] = {}
        self.webhook_events: Dict[tuple, datetime] = {}
        self.admit_calls: List[tuple] = []
        self.reads: List[str] = []
        self.fail_writes_for: set = set()
        self.candidates_override: Optional[List[Subscription]] = None
        self.commits = 0
        self.rollbacks = 0

    def add(self, **fields) -> Subscription:
        fields.setdefault("id", f"{fields['user_id']}-subscription")
        subscription = Subscription(**fields)
        self.subscriptions[subscription.user_id] = subscription
        return subscription

    @asynccontextmanager
    async def unit_of_work(self):
        snapshot = (dict(self.subscriptions), dict(self.webhook_events))
        try:
            yield FakeUnitOfWork(self)
        except Exception:
            self.subscriptions, self.webhook_events = snapshot
            self.rollbacks += 1
            raise
        self.commits += 1


# =============================================================================
# Gateways and notifier
# =============================================================================

class FakeGateway(PaymentGateway):
    """
    Records charges; signatures are valid when they equal "valid".
    """

    def __init__(self, provider: PaymentProvider):
        self.provider = provider
        self.charges: List[Dict[str, Any]] = []
        self.outcome = ChargeStatus.SUCCESS
        self.error: Optional[Exception] = None

    async def charge(
        self,
        authorization_token,
        amount_minor_units,
        idempotency_ref,
        metadata,
        customer_ref=None,
        email=None,
    ) -> ChargeResult:
        self.charges.append({
            "authorization_token": authorization_token,
            "amount": amount_minor_units,
            "reference": idempotency_ref,
            "metadata": metadata,
        })
        if self.error:
            raise self.error
        return ChargeResult(status=self.outcome, reference=idempotency_ref)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if signature != "valid":
            raise AuthenticationError("Invalid signature")
        try:
            return json.loads(payload)
        except ValueError as e:
            raise ValidationError("Invalid webhook payload", original_error=e) from e


class FakeStripeGateway(FakeGateway, ProviderSubscriptionSync):
    """Fake gateway that also records subscription updates pushed to Stripe."""

    def __init__(self):
        super().__init__(PaymentProvider.STRIPE)
        self.subscription_updates: List[tuple] = []
        self.sync_error: Optional[Exception] = None

    async def schedule_downgrade(self, subscription_ref: str, plan: Plan, user_id: str) -> None:
        if self.sync_error:
            raise self.sync_error
        self.subscription_updates.append(("downgrade", subscription_ref, plan))

    async def cancel_at_period_end(self, subscription_ref: str) -> None:
        if self.sync_error:
            raise self.sync_error
        self.subscription_updates.append(("cancel", subscription_ref, None))


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[tuple] = []

    async def notify(self, user_id, kind: NotificationKind, email=None, name=None, plan=None):
        self.sent.append((user_id, kind, plan))

    def kinds(self) -> List[NotificationKind]:
        return [kind for _, kind, _ in self.sent]


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="testing",
        cron_secret=TEST_CRON_SECRET,
        jwt_secret=TEST_JWT_SECRET,
        billing_cycle_days=30,
        billing_cron_min_interval_seconds=300,
        billing_max_candidates_per_run=500,
        billing_max_error_entries=50,
        usd_exchange_rate=1.0,
        webhook_event_retention_days=7,
    )


@pytest.fixture
def store(clock) -> InMemoryBillingStore:
    return InMemoryBillingStore(clock)


@pytest.fixture
def stripe_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def paystack_gateway() -> FakeGateway:
    return FakeGateway(PaymentProvider.PAYSTACK)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def coordinator() -> RunCoordinator:
    return RunCoordinator()


@pytest.fixture
def orchestrator(store, stripe_gateway, paystack_gateway, notifier, coordinator, test_settings, clock):
    return BillingOrchestrator(
        unit_of_work_factory=store.unit_of_work,
        gateways={
            PaymentProvider.STRIPE: stripe_gateway,
            PaymentProvider.PAYSTACK: paystack_gateway,
        },
        notifier=notifier,
        coordinator=coordinator,
        settings=test_settings,
        clock=clock,
        price_plan_map={"price_pro": "Pro", "price_plus": "Plus"},
    )


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app(orchestrator, store, test_settings, monkeypatch):
    """FastAPI application wired to the in-memory fakes."""
    from app.main import app
    from app.infrastructure.db.dependencies import get_subscription_repository
    from app.infrastructure.services.billing_orchestrator import get_billing_orchestrator
    from app.infrastructure.services.rate_limiter import get_rate_limiter

    limiter = RateLimiter()

    async def override_subscription_repository():
        yield FakeSubscriptionRepository(store)

    monkeypatch.setattr("app.api.dependencies.get_settings", lambda: test_settings)
    app.dependency_overrides[get_billing_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_subscription_repository] = override_subscription_repository
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app, raise_server_exceptions=False)


def make_token(
    user_id: str,
    session_version: Optional[int] = 1,
    secret: str = TEST_JWT_SECRET,
    expires_in: int = 3600,
) -> str:
    claims = {"sub": user_id, "exp": int(time.time()) + expires_in}
    if session_version is not None:
        claims["sv"] = session_version
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    def build(user_id: str, session_version: Optional[int] = 1) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, session_version)}"}
    return build


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def past() -> datetime:
    return NOW - timedelta(days=1)


@pytest.fixture
def active_pro(store, past) -> Subscription:
    """Paystack Pro subscription whose period ended yesterday."""
    return store.add(
        user_id="user-active-pro",
        status=SubscriptionStatus.ACTIVE,
        plan=Plan.PRO,
        current_period_end=past,
        payment_provider=PaymentProvider.PAYSTACK,
        payment_authorization_token="AUTH_pro",
        provider_customer_ref="CUS_pro",
        email="pro@example.com",
    )
