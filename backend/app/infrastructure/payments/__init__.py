"""
Payments Infrastructure Module

Stripe and Paystack gateways for recurring charges and webhook verification.
"""

from app.infrastructure.payments.paystack_service import PaystackService, get_paystack_service
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service

__all__ = [
    "PaystackService",
    "StripeService",
    "get_paystack_service",
    "get_stripe_service",
]
