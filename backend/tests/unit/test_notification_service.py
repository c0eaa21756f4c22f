"""
Unit tests for the Resend notifier.

Delivery is fire-and-forget, so failures must be logged and swallowed.
"""

from unittest.mock import patch

import pytest

from app.domain.subscription import NotificationKind
from app.infrastructure.services.notification_service import (
    BODIES,
    SUBJECTS,
    ResendNotifier,
    render_email,
)


@pytest.fixture
def notifier():
    return ResendNotifier(api_key="re_test", from_email="billing@example.com")


class TestResendNotifier:

    @pytest.mark.asyncio
    async def test_sends_email(self, notifier):
        with patch("resend.Emails.send", return_value={"id": "email_1"}) as send:
            await notifier.notify(
                "user-1",
                NotificationKind.SUBSCRIPTION_RENEWED,
                email="pro@example.com",
                name="Ada",
                plan="Pro",
            )

        params = send.call_args.args[0]
        assert params["to"] == ["pro@example.com"]
        assert params["from"] == "billing@example.com"
        assert params["subject"] == SUBJECTS[NotificationKind.SUBSCRIPTION_RENEWED]
        assert "Hi Ada," in params["html"]
        assert "Pro subscription renewed" in params["html"]

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self, notifier, caplog):
        with patch("resend.Emails.send", side_effect=RuntimeError("resend down")):
            await notifier.notify("user-1", NotificationKind.PAYMENT_FAILED, email="pro@example.com")

        assert "Failed to send payment_failed email" in caplog.text

    @pytest.mark.asyncio
    async def test_skips_without_email(self, notifier):
        with patch("resend.Emails.send") as send:
            await notifier.notify("user-1", NotificationKind.PAYMENT_FAILED)
        send.assert_not_called()

    @pytest.mark.asyncio
    async def test_skips_when_unconfigured(self, monkeypatch):
        unconfigured = ResendNotifier(api_key="re_test")
        monkeypatch.setattr(unconfigured, "_api_key", None)

        with patch("resend.Emails.send") as send:
            await unconfigured.notify("user-1", NotificationKind.PAYMENT_FAILED, email="a@example.com")
        send.assert_not_called()


class TestTemplates:

    def test_every_kind_has_copy(self):
        assert set(SUBJECTS) == set(NotificationKind)
        assert set(BODIES) == set(NotificationKind)

    def test_render_without_name_or_plan(self):
        html = render_email(NotificationKind.PLAN_DOWNGRADED, None, None)
        assert html.startswith("<p>Hi,</p>")
        assert "current plan" in html
