"""
API Dependencies

FastAPI dependency injection for authentication, rate limiting and the
billing orchestrator.

Security: user JWTs are verified with HS256 and the shared JWT secret, and
their ``sv`` (session version) claim must match the stored value so that a
session invalidation revokes every token issued before it. Cron callers
present the shared cron secret as a bearer token.
"""

import logging
import secrets
from typing import Annotated, Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings
from app.domain.subscription import Subscription
from app.infrastructure.db.dependencies import SubscriptionRepoDep
from app.infrastructure.exceptions import AuthenticationError, RateLimitError
from app.infrastructure.services.billing_orchestrator import (
    BillingOrchestrator,
    get_billing_orchestrator,
)
from app.infrastructure.services.rate_limiter import (
    RATE_LIMITS,
    RateLimiter,
    get_rate_limiter,
    get_user_ip_key,
)


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _decode_with_secret(token: str, secret: str) -> dict:
    """Verify JWT using the HS256 shared secret."""
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        options={"require": ["exp", "sub"]},
    )


async def get_token_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """
    Verify the bearer JWT and return its claims.

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured; rejecting authenticated request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
        )

    try:
        payload = _decode_with_secret(credentials.credentials, settings.jwt_secret)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )

    return payload


def is_session_current(claims: dict, subscription: Optional[Subscription]) -> bool:
    """
    Whether the token's session version matches the stored one.

    Tokens without an ``sv`` claim count as version 1; users without a
    subscription row have never been invalidated.
    """
    if subscription is None:
        return True
    try:
        token_version = int(claims.get("sv", 1))
    except (TypeError, ValueError):
        return False
    return token_version == subscription.session_version


async def get_current_user_id(
    repo: SubscriptionRepoDep,
    claims: dict = Depends(get_token_claims),
) -> str:
    """
    Authenticated user ID (``sub`` claim) of a token that is still current.

    Raises:
        HTTPException 401: token invalid or its session was invalidated.
    """
    user_id = claims["sub"]
    subscription = await repo.get_by_user_id(user_id)
    if not is_session_current(claims, subscription):
        logger.info(f"Rejected stale session token for user {user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has been invalidated",
        )
    return user_id


CurrentUserDep = Annotated[str, Depends(get_current_user_id)]


# =============================================================================
# Cron Authentication
# =============================================================================

async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    Require ``Authorization: Bearer <CRON_SECRET>``.

    Raises:
        AuthenticationError: secret missing, wrong, or not configured.
    """
    expected = get_settings().cron_secret
    if not expected:
        logger.error("CRON_SECRET is not configured; refusing cron request")
        raise AuthenticationError("Cron secret is not configured")

    if not credentials or not secrets.compare_digest(
        credentials.credentials.encode("utf-8"),
        expected.encode("utf-8"),
    ):
        logger.warning("Unauthorized cron request")
        raise AuthenticationError("Invalid cron secret")


# =============================================================================
# Rate Limiting
# =============================================================================

RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]


def _apply_rate_limit(
    limiter: RateLimiter,
    request: Request,
    response: Response,
    preset: str,
    user_id: Optional[str],
) -> None:
    config = RATE_LIMITS[preset]
    key = get_user_ip_key(request, preset, user_id)
    result = limiter.check(key, config.limit, config.window_seconds)

    if not result.allowed:
        logger.warning(f"Rate limit exceeded for {key}")
        raise RateLimitError(
            f"Too many requests. Try again in {result.reset_in_seconds} seconds.",
            retry_after=result.reset_in_seconds,
            headers=result.headers(),
        )

    response.headers.update(result.headers())


def user_rate_limit(preset: str) -> Callable:
    """Dependency limiting an authenticated endpoint per user."""

    async def dependency(
        request: Request,
        response: Response,
        user_id: CurrentUserDep,
        limiter: RateLimiterDep,
    ) -> None:
        _apply_rate_limit(limiter, request, response, preset, user_id)

    return dependency


def ip_rate_limit(preset: str) -> Callable:
    """Dependency limiting an unauthenticated endpoint per client IP."""

    async def dependency(
        request: Request,
        response: Response,
        limiter: RateLimiterDep,
    ) -> None:
        _apply_rate_limit(limiter, request, response, preset, None)

    return dependency


# =============================================================================
# Orchestrator
# =============================================================================

OrchestratorDep = Annotated[BillingOrchestrator, Depends(get_billing_orchestrator)]
