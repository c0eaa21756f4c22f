"""
Application Settings for the Billing Reconciler

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every key has a default so the service can be imported (and tested)
    without a populated environment. Production deployments must provide
    CRON_SECRET and JWT_SECRET.
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    # Shared secrets
    cron_secret: Optional[str] = None
    jwt_secret: Optional[str] = None

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_pro_price_id: Optional[str] = None
    stripe_plus_price_id: Optional[str] = None

    # Paystack Configuration (webhooks are signed with the secret key)
    paystack_secret_key: Optional[str] = None
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: float = 30.0

    # Resend (transactional email)
    resend_api_key: Optional[str] = None
    resend_from_email: str = "billing@example.com"

    # Billing cron
    billing_cycle_days: int = 30
    billing_cron_min_interval_seconds: int = 300
    billing_max_candidates_per_run: int = 500
    billing_max_error_entries: int = 50

    # Prices are configured in USD cents; the static rate converts them
    # into the minor units of charge_currency.
    charge_currency: str = "USD"
    usd_exchange_rate: float = 1.0

    # Webhook dedup retention
    webhook_event_retention_days: int = 7

    # Rate limiter background sweep
    rate_limit_sweep_interval_seconds: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Production requires the cron and session secrets."""
        if self.is_production:
            missing = [
                key for key, value in (
                    ("CRON_SECRET", self.cron_secret),
                    ("JWT_SECRET", self.jwt_secret),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required when ENVIRONMENT=production"
                )

        if self.usd_exchange_rate <= 0:
            raise ValueError("USD_EXCHANGE_RATE must be positive")

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    @property
    def is_stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    @property
    def is_paystack_configured(self) -> bool:
        return bool(self.paystack_secret_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
