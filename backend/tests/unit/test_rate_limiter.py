"""
Unit tests for the fixed-window rate limiter.
"""

import pytest
from starlette.requests import Request

from app.infrastructure.services.rate_limiter import (
    RATE_LIMITS,
    RateLimiter,
    get_client_ip,
    get_user_ip_key,
)


class FakeTime:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_request(headers: dict) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }
    return Request(scope)


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def limiter(fake_time):
    return RateLimiter(clock=fake_time)


class TestFixedWindow:
    """Counter semantics within and across windows."""

    def test_remaining_decreases_until_limit(self, limiter):
        remaining = [limiter.check("k", 5, 60).remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]

    def test_call_over_limit_is_rejected(self, limiter, fake_time):
        for _ in range(5):
            assert limiter.check("k", 5, 60).allowed

        fake_time.now += 10
        result = limiter.check("k", 5, 60)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.reset_in_seconds == 50

    def test_rejection_does_not_extend_window(self, limiter, fake_time):
        for _ in range(6):
            limiter.check("k", 5, 60)

        fake_time.now += 60
        result = limiter.check("k", 5, 60)

        assert result.allowed is True
        assert result.remaining == 4

    def test_window_expires_exactly_after_window_seconds(self, limiter, fake_time):
        for _ in range(5):
            limiter.check("k", 5, 60)

        fake_time.now += 59.5
        assert limiter.check("k", 5, 60).allowed is False

        fake_time.now += 0.5
        assert limiter.check("k", 5, 60).allowed is True

    def test_reset_rounds_up_to_whole_seconds(self, limiter, fake_time):
        limiter.check("k", 1, 60)
        fake_time.now += 0.25
        assert limiter.check("k", 1, 60).reset_in_seconds == 60

    def test_keys_are_independent(self, limiter):
        limiter.check("a", 1, 60)
        assert limiter.check("a", 1, 60).allowed is False
        assert limiter.check("b", 1, 60).allowed is True

    def test_preset_lookup(self, limiter):
        result = limiter.check_preset("k", "payment")
        assert result.limit == RATE_LIMITS["payment"].limit
        assert result.reset_in_seconds == RATE_LIMITS["payment"].window_seconds


class TestSweep:
    def test_sweep_removes_only_expired_entries(self, limiter, fake_time):
        limiter.check("short", 5, 10)
        limiter.check("long", 5, 100)

        fake_time.now += 10
        removed = limiter.sweep_expired()

        assert removed == 1
        assert len(limiter) == 1

    def test_swept_key_starts_fresh(self, limiter, fake_time):
        limiter.check("k", 1, 10)
        fake_time.now += 11
        limiter.sweep_expired()

        result = limiter.check("k", 1, 10)
        assert result.allowed is True
        assert result.remaining == 0


class TestHeaders:
    def test_allowed_headers(self, limiter):
        headers = limiter.check("k", 10, 300).headers()
        assert headers == {
            "X-RateLimit-Limit": "10",
            "X-RateLimit-Remaining": "9",
            "X-RateLimit-Reset": "300",
        }

    def test_rejected_headers_include_retry_after(self, limiter):
        limiter.check("k", 1, 60)
        headers = limiter.check("k", 1, 60).headers()
        assert headers["Retry-After"] == "60"
        assert headers["X-RateLimit-Remaining"] == "0"


class TestClientIdentity:
    def test_forwarded_for_first_hop(self):
        request = make_request({"x-forwarded-for": "203.0.113.5, 10.0.0.1", "x-real-ip": "10.0.0.9"})
        assert get_client_ip(request) == "203.0.113.5"

    def test_cloudflare_header_before_real_ip(self):
        request = make_request({"cf-connecting-ip": "198.51.100.7", "x-real-ip": "10.0.0.9"})
        assert get_client_ip(request) == "198.51.100.7"

    def test_real_ip_fallback(self):
        assert get_client_ip(make_request({"x-real-ip": "10.0.0.9"})) == "10.0.0.9"

    def test_unknown_without_headers(self):
        assert get_client_ip(make_request({})) == "unknown"

    def test_user_key_preferred_over_ip(self):
        request = make_request({"x-real-ip": "10.0.0.9"})
        assert get_user_ip_key(request, "payment", "user-1") == "user:user-1:payment"
        assert get_user_ip_key(request, "payment") == "ip:10.0.0.9:payment"
