"""
Subscription API Routes

REST API endpoints for subscription management and session invalidation.
All endpoints require a valid JWT and are rate-limited per user.
"""

import logging

from fastapi import APIRouter, Depends

from app.api.dependencies import CurrentUserDep, OrchestratorDep, user_rate_limit
from app.domain.subscription import (
    ChangePlanRequest,
    Subscription,
    SubscriptionStatus,
    SubscriptionStatusResponse,
    get_daily_message_limit,
    is_paid_plan,
)


logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(user_rate_limit("payment"))])


def to_status_response(subscription: Subscription) -> SubscriptionStatusResponse:
    is_active = is_paid_plan(subscription.plan) and subscription.status in (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELING,
        SubscriptionStatus.DOWNGRADING,
    )
    return SubscriptionStatusResponse(
        plan=subscription.plan,
        status=subscription.status,
        scheduled_plan=subscription.scheduled_plan,
        current_period_end=subscription.current_period_end,
        is_active=is_active,
        daily_message_limit=get_daily_message_limit(subscription.plan),
    )


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription_status(user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    """
    Get the current user's subscription status.

    Creates a Free subscription if none exists.
    """
    subscription = await orchestrator.get_subscription(user_id)
    return to_status_response(subscription)


@router.post("/subscription/cancel", response_model=SubscriptionStatusResponse)
async def cancel_subscription(user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    """Cancel at the end of the current billing period."""
    subscription = await orchestrator.request_cancellation(user_id)
    return to_status_response(subscription)


@router.post("/subscription/change-plan", response_model=SubscriptionStatusResponse)
async def change_plan(
    body: ChangePlanRequest,
    user_id: CurrentUserDep,
    orchestrator: OrchestratorDep,
):
    """
    Schedule a downgrade for the end of the current billing period.

    Upgrades go through checkout and are rejected here with 409.
    """
    subscription = await orchestrator.request_plan_change(user_id, body.new_plan)
    return to_status_response(subscription)


@router.post("/sessions/invalidate")
async def invalidate_sessions(user_id: CurrentUserDep, orchestrator: OrchestratorDep):
    """Sign out every session by bumping the user's session version."""
    version = await orchestrator.invalidate_sessions(user_id)
    return {"success": True, "session_version": version}
