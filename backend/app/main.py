"""
Billing Reconciler - FastAPI Application

Main entry point for the billing API.
Provides the cron sweep, provider webhooks and subscription endpoints.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    AuthenticationError,
    BillingError,
    InvalidTransitionError,
    NotFoundError,
    PaymentGatewayError,
    RateLimitError,
    ValidationError,
)
from app.infrastructure.services.rate_limiter import get_rate_limiter

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"Billing Reconciler starting in {settings.environment} mode...")

    if settings.database_url:
        try:
            from app.infrastructure.db.database import init_db
            await init_db()
            logger.info("SQLModel database connection pool initialized")
        except Exception as e:
            logger.warning(f"SQLModel database initialization skipped: {e}")

    sweep_task = asyncio.create_task(
        get_rate_limiter().run_periodic_sweep(settings.rate_limit_sweep_interval_seconds)
    )

    yield

    # Shutdown
    sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep_task

    if settings.database_url:
        try:
            from app.infrastructure.db.database import close_db
            await close_db()
            logger.info("SQLModel database connection pool closed")
        except Exception as e:
            logger.warning(f"SQLModel database shutdown error: {e}")

    logger.info("Billing Reconciler shutting down...")


app = FastAPI(
    title="Billing Reconciler",
    description="Subscription billing reconciliation across provider webhooks and the renewal cron",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    """Handle failed shared-secret authentication."""
    return JSONResponse(
        status_code=401,
        content=exc.to_dict(),
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_error_handler(request: Request, exc: InvalidTransitionError):
    """Handle subscription changes not allowed from the current status."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(PaymentGatewayError)
async def payment_gateway_error_handler(request: Request, exc: PaymentGatewayError):
    """Handle a payment provider rejecting or failing a request."""
    logger.error(f"Payment gateway error: {exc.message}")
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(RateLimitError)
async def rate_limit_error_handler(request: Request, exc: RateLimitError):
    """Handle rate limit errors."""
    return JSONResponse(
        status_code=429,
        content=exc.to_dict(),
        headers=exc.headers,
    )


@app.exception_handler(BillingError)
async def general_error_handler(request: Request, exc: BillingError):
    """Handle all other application errors."""
    logger.error(f"Unhandled {exc.__class__.__name__}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "billing-reconciler"}


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import cron, subscriptions, webhooks  # noqa: E402

app.include_router(cron.router, prefix="/api", tags=["Cron"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
