"""
Payment Provider Webhook Handlers

Receives Stripe and Paystack webhooks and hands the raw body to the
billing orchestrator, which verifies, dedupes and applies them.

Status codes:
- 200 {"received": true} for processed, ignored and duplicate deliveries
- 400 for a missing/invalid signature or malformed payload (not retried)
- 500 when processing fails, so the provider retries the delivery
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.dependencies import OrchestratorDep, ip_rate_limit
from app.domain.subscription import PaymentProvider, WebhookResult
from app.infrastructure.exceptions import AuthenticationError, ValidationError


logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(ip_rate_limit("webhook"))])


async def _process(
    request: Request,
    orchestrator: OrchestratorDep,
    provider: PaymentProvider,
    signature: Optional[str],
) -> WebhookResult:
    payload = await request.body()

    try:
        return await orchestrator.handle_webhook(payload, signature, provider)
    except AuthenticationError as e:
        logger.error(f"{provider.value} webhook signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        )
    except ValidationError as e:
        logger.error(f"Malformed {provider.value} webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        )


@router.post("/webhooks/stripe", response_model=WebhookResult, response_model_exclude_none=True)
async def stripe_webhook(request: Request, orchestrator: OrchestratorDep):
    """Handle Stripe webhook events (Stripe-Signature header)."""
    return await _process(
        request,
        orchestrator,
        PaymentProvider.STRIPE,
        request.headers.get("stripe-signature"),
    )


@router.post("/webhooks/paystack", response_model=WebhookResult, response_model_exclude_none=True)
async def paystack_webhook(request: Request, orchestrator: OrchestratorDep):
    """Handle Paystack webhook events (x-paystack-signature header)."""
    return await _process(
        request,
        orchestrator,
        PaymentProvider.PAYSTACK,
        request.headers.get("x-paystack-signature"),
    )
