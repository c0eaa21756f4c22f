"""
Paystack Payment Service

Infrastructure service for Paystack recurring charges over the REST API.
Paystack signs webhooks with HMAC-SHA512 of the raw body, keyed by the
account's secret key, and sends the hex digest in x-paystack-signature.
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

import httpx

from app.config.settings import get_settings
from app.domain.interfaces import ChargeResult, ChargeStatus, PaymentGateway
from app.domain.subscription import PaymentProvider
from app.infrastructure.exceptions import (
    AuthenticationError,
    ConfigurationError,
    PaymentGatewayError,
    ValidationError,
)


logger = logging.getLogger(__name__)


class PaystackService(PaymentGateway):
    """
    Paystack payment processing service.

    Charges stored authorization codes with /transaction/charge_authorization.
    """

    provider = PaymentProvider.PAYSTACK

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self._secret_key = secret_key or settings.paystack_secret_key
        self._base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self._currency = (currency or settings.charge_currency).upper()
        self._timeout = timeout or settings.paystack_timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    # =========================================================================
    # Recurring Charges
    # =========================================================================

    async def charge(
        self,
        authorization_token: str,
        amount_minor_units: int,
        idempotency_ref: str,
        metadata: Dict[str, Any],
        customer_ref: Optional[str] = None,
        email: Optional[str] = None,
    ) -> ChargeResult:
        """
        Charge a Paystack authorization code.

        Args:
            authorization_token: Reusable Paystack authorization code
            amount_minor_units: Amount in the smallest currency unit
            idempotency_ref: Transaction reference; Paystack rejects reuse
            metadata: Stored on the transaction
            customer_ref: Unused; Paystack identifies customers by email
            email: Customer email (required by Paystack)

        Returns:
            ChargeResult with SUCCESS only when the transaction status is "success"
        """
        if not self._secret_key:
            raise ConfigurationError(
                "Paystack is not configured",
                missing_keys=["PAYSTACK_SECRET_KEY"],
            )

        body = {
            "authorization_code": authorization_token,
            "email": email,
            "amount": amount_minor_units,
            "currency": self._currency,
            "reference": idempotency_ref,
            "metadata": metadata,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"{self._base_url}/transaction/charge_authorization",
                    headers=self._headers(),
                    json=body,
                )
                response.raise_for_status()
                payload = response.json()

        except httpx.HTTPStatusError as e:
            logger.error(
                f"Paystack charge {idempotency_ref} returned HTTP "
                f"{e.response.status_code}: {e.response.text[:200]}"
            )
            raise PaymentGatewayError(
                f"Paystack charge failed with HTTP {e.response.status_code}",
                provider=self.provider.value,
                operation="charge",
                original_error=e,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Paystack charge {idempotency_ref} failed: {e}")
            raise PaymentGatewayError(
                f"Paystack charge failed: {e}",
                provider=self.provider.value,
                operation="charge",
                original_error=e,
            ) from e

        data = payload.get("data") or {}
        succeeded = bool(payload.get("status")) and data.get("status") == "success"
        if not succeeded:
            logger.warning(
                f"Paystack charge {idempotency_ref} not successful: "
                f"{data.get('gateway_response') or payload.get('message')}"
            )

        return ChargeResult(
            status=ChargeStatus.SUCCESS if succeeded else ChargeStatus.FAILED,
            reference=data.get("reference") or idempotency_ref,
            raw=payload,
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def compute_signature(self, payload: bytes) -> str:
        """Hex HMAC-SHA512 of ``payload`` under the secret key."""
        return hmac.new(
            self._secret_key.encode("utf-8"),
            payload,
            hashlib.sha512,
        ).hexdigest()

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify x-paystack-signature, then parse the event.

        Raises:
            ConfigurationError if no secret key is configured
            AuthenticationError if the signature is missing or invalid
            ValidationError if the payload is not a JSON object
        """
        if not self._secret_key:
            raise ConfigurationError(
                "Paystack is not configured",
                missing_keys=["PAYSTACK_SECRET_KEY"],
            )
        if not signature:
            raise AuthenticationError("Missing x-paystack-signature header")

        expected = self.compute_signature(payload)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise AuthenticationError("Invalid Paystack signature")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise ValidationError("Invalid webhook payload", original_error=e) from e
        if not isinstance(event, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        return event


# =============================================================================
# Singleton Instance
# =============================================================================

_paystack_service_instance: Optional[PaystackService] = None


def get_paystack_service() -> PaystackService:
    """Get or create Paystack service singleton."""
    global _paystack_service_instance

    if _paystack_service_instance is None:
        _paystack_service_instance = PaystackService()

    return _paystack_service_instance
