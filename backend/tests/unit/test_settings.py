"""
Unit tests for Pydantic Settings configuration.

Tests settings loading and validation.
"""

import pytest
from pydantic import ValidationError

from app.config.settings import Settings


class TestSettings:
    """Tests for Settings configuration."""

    def test_settings_has_defaults(self):
        """Settings should have sensible defaults."""
        settings = Settings(_env_file=None)

        assert settings.billing_cycle_days == 30
        assert settings.billing_cron_min_interval_seconds == 300
        assert settings.webhook_event_retention_days == 7
        assert settings.paystack_base_url == "https://api.paystack.co"

    def test_settings_loads_from_env(self, monkeypatch):
        """Settings should load from environment variables."""
        monkeypatch.setenv("CRON_SECRET", "from-env")
        monkeypatch.setenv("BILLING_MAX_CANDIDATES_PER_RUN", "25")

        settings = Settings(_env_file=None)

        assert settings.cron_secret == "from-env"
        assert settings.billing_max_candidates_per_run == 25

    def test_production_requires_secrets(self, monkeypatch):
        monkeypatch.delenv("CRON_SECRET", raising=False)
        monkeypatch.delenv("JWT_SECRET", raising=False)

        with pytest.raises(ValidationError) as exc_info:
            Settings(_env_file=None, environment="production")

        assert "CRON_SECRET" in str(exc_info.value)
        assert "JWT_SECRET" in str(exc_info.value)

    def test_production_with_secrets(self):
        settings = Settings(
            _env_file=None,
            environment="production",
            cron_secret="c",
            jwt_secret="j",
        )
        assert settings.is_production is True
        assert settings.is_development is False

    def test_exchange_rate_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, usd_exchange_rate=0)

    def test_provider_configured_flags(self):
        settings = Settings(
            _env_file=None,
            stripe_secret_key="sk_test",
            stripe_webhook_secret=None,
            paystack_secret_key="sk_paystack",
        )
        assert settings.is_stripe_configured is False
        assert settings.is_paystack_configured is True

    def test_allowed_origins_includes_localhost(self):
        """allowed_origins should include localhost for development."""
        settings = Settings(_env_file=None)

        assert "http://localhost:3000" in settings.allowed_origins
