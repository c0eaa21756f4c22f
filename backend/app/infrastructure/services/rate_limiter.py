"""
Fixed-Window Rate Limiter

Process-local request counter keyed by caller identity and endpoint class.

A window opens on the first request for a key and expires exactly
``window_seconds`` later. Requests inside the window share one counter;
once the window expires the counter restarts at zero. State is
best-effort and not shared between processes.
"""

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Static (limit, window) preset for an endpoint class."""
    limit: int
    window_seconds: int


RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "signup": RateLimitConfig(limit=5, window_seconds=3600),
    "login": RateLimitConfig(limit=10, window_seconds=900),
    "password_reset": RateLimitConfig(limit=3, window_seconds=3600),
    "messages": RateLimitConfig(limit=60, window_seconds=60),
    "chats": RateLimitConfig(limit=30, window_seconds=60),
    "general": RateLimitConfig(limit=100, window_seconds=60),
    "payment": RateLimitConfig(limit=10, window_seconds=300),
    "webhook": RateLimitConfig(limit=100, window_seconds=60),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_in_seconds: int

    def headers(self) -> Dict[str, str]:
        """X-RateLimit-* headers, plus Retry-After when rejected."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset_in_seconds)
        return headers


class RateLimiter:
    """
    In-memory fixed-window rate limiter.

    Entries map key -> (count, window_reset_at). A lock guards the
    check-and-increment so concurrent worker threads share one counter.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Admit and count one request for ``key``, or reject it.

        A rejected check does not touch the counter.
        """
        now = self._clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry[1]:
                entry = (0, now + window_seconds)

            count, reset_at = entry
            reset_in = max(0, math.ceil(reset_at - now))

            if count >= limit:
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_in_seconds=reset_in,
                )

            count += 1
            self._entries[key] = (count, reset_at)

        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            reset_in_seconds=reset_in,
        )

    def check_preset(self, key: str, preset: str) -> RateLimitResult:
        config = RATE_LIMITS[preset]
        return self.check(key, config.limit, config.window_seconds)

    def sweep_expired(self) -> int:
        """Drop entries whose window has expired. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, reset_at) in self._entries.items() if now >= reset_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Rate limiter swept {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    async def run_periodic_sweep(self, interval_seconds: float) -> None:
        """Sweep expired entries every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep_expired()


# =============================================================================
# Key composition
# =============================================================================

def get_client_ip(request: Request) -> str:
    """
    Resolve the caller IP from proxy headers.

    Order: first hop of x-forwarded-for, cf-connecting-ip, x-real-ip.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return "unknown"


def get_user_ip_key(request: Request, endpoint: str, user_id: Optional[str] = None) -> str:
    """Rate-limit key: per user when authenticated, otherwise per IP."""
    if user_id:
        return f"user:{user_id}:{endpoint}"
    return f"ip:{get_client_ip(request)}:{endpoint}"


# =============================================================================
# Singleton Instance
# =============================================================================

_rate_limiter_instance: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the process-wide rate limiter."""
    global _rate_limiter_instance

    if _rate_limiter_instance is None:
        _rate_limiter_instance = RateLimiter()

    return _rate_limiter_instance
