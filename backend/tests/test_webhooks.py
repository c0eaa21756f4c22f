"""
Integration Tests for Webhooks (Stripe and Paystack)

Verifies:
- Signature verification failure (400)
- Successful event processing
- Idempotency (prevent double processing)
- Processing failure surfaces as 500 so the provider retries
"""

import json

from app.domain.subscription import Plan, SubscriptionStatus


def paystack_charge_body(reference="ref_api_1") -> str:
    return json.dumps({
        "event": "charge.success",
        "data": {
            "reference": reference,
            "customer": {"customer_code": "CUS_api", "email": "api@example.com"},
            "authorization": {"authorization_code": "AUTH_api", "reusable": True},
            "metadata": {"userId": "user-api", "plan": "Pro"},
        },
    })


class TestStripeWebhooks:

    def test_webhook_missing_signature(self, client):
        """Webhook without signature header should fail 400."""
        response = client.post("/api/webhooks/stripe", json={"id": "evt_123", "type": "customer.created"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"

    def test_webhook_invalid_signature(self, client, store):
        """Webhook with invalid signature should fail 400 before any record is written."""
        response = client.post(
            "/api/webhooks/stripe",
            json={"id": "evt_123", "type": "customer.created"},
            headers={"stripe-signature": "invalid_sig"},
        )
        assert response.status_code == 400
        assert store.webhook_events == {}

    def test_webhook_malformed_payload(self, client):
        response = client.post(
            "/api/webhooks/stripe",
            content=b"{not json",
            headers={"stripe-signature": "valid"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid payload"

    def test_webhook_signed_but_misshapen_payload(self, client, store):
        """A bad field in a signed event is a 400, not a 500 the provider would retry forever."""
        response = client.post(
            "/api/webhooks/stripe",
            json={
                "id": "evt_bad_period",
                "type": "invoice.payment_succeeded",
                "data": {"object": {"lines": {"data": [{"period": {"end": "soon"}}]}}},
            },
            headers={"stripe-signature": "valid"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid payload"
        assert store.webhook_events == {}

    def test_webhook_subscription_deleted(self, client, store, past):
        """customer.subscription.deleted moves the user to Free."""
        store.add(
            user_id="user-stripe",
            plan=Plan.PLUS,
            current_period_end=past,
            payment_provider="stripe",
            provider_subscription_ref="sub_api",
        )

        response = client.post(
            "/api/webhooks/stripe",
            json={
                "id": "evt_deleted",
                "type": "customer.subscription.deleted",
                "data": {"object": {"id": "sub_api", "customer": "cus_api"}},
            },
            headers={"stripe-signature": "valid"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "duplicate": False,
            "event_type": "customer.subscription.deleted",
        }
        assert store.subscriptions["user-stripe"].plan == Plan.FREE
        assert store.subscriptions["user-stripe"].status == SubscriptionStatus.CANCELED

    def test_webhook_unhandled_type_acknowledged(self, client):
        response = client.post(
            "/api/webhooks/stripe",
            json={"id": "evt_other", "type": "payout.paid", "data": {"object": {}}},
            headers={"stripe-signature": "valid"},
        )
        assert response.status_code == 200
        assert response.json()["received"] is True


class TestPaystackWebhooks:

    def test_duplicate_delivery(self, client, store, notifier):
        """Second delivery of the same event is acknowledged but not applied."""
        headers = {"x-paystack-signature": "valid"}

        first = client.post("/api/webhooks/paystack", content=paystack_charge_body(), headers=headers)
        second = client.post("/api/webhooks/paystack", content=paystack_charge_body(), headers=headers)

        assert first.status_code == 200
        assert first.json()["duplicate"] is False
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert len(notifier.sent) == 1
        assert store.subscriptions["user-api"].plan == Plan.PRO

    def test_processing_failure_returns_500_and_retry_succeeds(self, client, store):
        headers = {"x-paystack-signature": "valid"}
        store.fail_writes_for.add("user-api")

        failed = client.post("/api/webhooks/paystack", content=paystack_charge_body(), headers=headers)
        assert failed.status_code == 500
        assert store.webhook_events == {}

        store.fail_writes_for.clear()
        retried = client.post("/api/webhooks/paystack", content=paystack_charge_body(), headers=headers)
        assert retried.status_code == 200
        assert retried.json()["duplicate"] is False

    def test_signature_header_name(self, client):
        """Paystack signs with x-paystack-signature, not Stripe's header."""
        response = client.post(
            "/api/webhooks/paystack",
            content=paystack_charge_body(),
            headers={"stripe-signature": "valid"},
        )
        assert response.status_code == 400

    def test_rate_limit_headers(self, client):
        response = client.post(
            "/api/webhooks/paystack",
            content=paystack_charge_body(),
            headers={"x-paystack-signature": "valid"},
        )
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"
