# API Routes Module
from app.api.routes import (
    cron,
    subscriptions,
    webhooks,
)

__all__ = [
    "cron",
    "subscriptions",
    "webhooks",
]
