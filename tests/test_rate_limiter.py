"""Tests for the fixed-window rate limiter."""

import asyncio
import math
import time
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from limits.aio.storage import MemoryStorage, RedisStorage

from kentra.services.rate_limiter import (
    RATE_LIMIT_CONFIGS,
    RateLimitExceeded,
    RateLimiter,
    get_client_identifier,
    get_rate_limiter,
    rate_limit_response,
    set_rate_limiter,
)


class FakeClock:
    def __init__(self, start: float | None = None):
        self.now = time.time() * 1000 if start is None else start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter()


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_request_opens_window(self, limiter):
        before = time.time() * 1000

        result = await limiter.check("auth:1.2.3.4", 5, 60_000)

        assert result.allowed is True
        assert result.remaining == 4
        assert result.retry_after == 0
        assert 59_000 < result.reset_time - before <= 61_000

    @pytest.mark.asyncio
    async def test_sixth_call_in_window_is_denied(self, limiter):
        results = [await limiter.check("auth:1.2.3.4", 5, 60_000) for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]

    @pytest.mark.asyncio
    async def test_denied_call_does_not_extend_window(self, limiter):
        first = await limiter.check("k", 1, 60_000)
        denied = await limiter.check("k", 1, 60_000)

        assert denied.allowed is False
        assert denied.reset_time == first.reset_time

    @pytest.mark.asyncio
    async def test_window_resets_after_reset_time(self, limiter):
        await limiter.check("k", 2, 1_000)
        await limiter.check("k", 2, 1_000)
        assert (await limiter.check("k", 2, 1_000)).allowed is False

        await asyncio.sleep(1.1)
        result = await limiter.check("k", 2, 1_000)

        assert result.allowed is True
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        await limiter.check("auth:a", 1, 60_000)

        assert (await limiter.check("auth:a", 1, 60_000)).allowed is False
        assert (await limiter.check("auth:b", 1, 60_000)).allowed is True

    @pytest.mark.asyncio
    async def test_reset_clears_a_single_key(self, limiter):
        await limiter.check("k", 1, 60_000)
        await limiter.check("other", 1, 60_000)

        await limiter.reset("k", 1, 60_000)

        assert (await limiter.check("k", 1, 60_000)).allowed is True
        assert (await limiter.check("other", 1, 60_000)).allowed is False

    @pytest.mark.asyncio
    async def test_retry_after_is_measured_with_limiter_clock(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)

        await limiter.check("k", 1, 60_000)
        denied = await limiter.check("k", 1, 60_000)

        assert denied.allowed is False
        assert denied.retry_after == math.ceil((denied.reset_time - clock.now) / 1000)

        clock.now = denied.reset_time - 2_500
        assert (await limiter.check("k", 1, 60_000)).retry_after == 3


class TestBackendSelection:
    def test_memory_backend_by_default(self):
        set_rate_limiter(None)
        settings = SimpleNamespace(rate_limit_backend="memory", redis_url="redis://localhost:6379/0")

        with patch("kentra.services.rate_limiter.get_settings", return_value=settings):
            limiter = get_rate_limiter()

        assert isinstance(limiter.storage, MemoryStorage)
        assert get_rate_limiter() is limiter

    def test_redis_backend_shares_counters(self):
        set_rate_limiter(None)
        settings = SimpleNamespace(rate_limit_backend="redis", redis_url="redis://localhost:6379/0")

        with patch("kentra.services.rate_limiter.get_settings", return_value=settings):
            limiter = get_rate_limiter()

        assert isinstance(limiter.storage, RedisStorage)


class TestRateLimitHelpers:
    def test_named_configs(self):
        assert RATE_LIMIT_CONFIGS["auth"].max_requests == 5
        assert RATE_LIMIT_CONFIGS["phone_verification"].window_ms == 3_600_000
        assert RATE_LIMIT_CONFIGS["checkout"].max_requests == 10
        assert RATE_LIMIT_CONFIGS["general"].max_requests == 60

    def test_response_has_rate_limit_headers(self):
        response = rate_limit_response(RateLimitExceeded(limit=5, reset_time=1_700_000_000_000, retry_after=42))

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == "1700000000000"

    @pytest.mark.parametrize(
        "headers,expected",
        [
            ({"cf-connecting-ip": "1.1.1.1", "x-real-ip": "2.2.2.2"}, "1.1.1.1"),
            ({"x-real-ip": "2.2.2.2"}, "2.2.2.2"),
            ({"x-forwarded-for": "3.3.3.3, 10.0.0.1"}, "3.3.3.3"),
        ],
    )
    def test_client_identifier_prefers_proxy_headers(self, headers, expected):
        request = MagicMock()
        request.headers = headers
        assert get_client_identifier(request) == expected


class TestRateLimitedRoutes:
    @pytest.mark.asyncio
    async def test_subscription_route_returns_429_when_exhausted(
        self, async_client, auth_headers, test_user, rate_limiter
    ):
        for _ in range(60):
            await rate_limiter.check(f"general:user:{test_user.id}", 60, 60_000)

        response = await async_client.post("/api/subscription/sync-status", headers=auth_headers)

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "Rate limit exceeded"
        assert body["retryAfter"] >= 1
        assert response.headers["X-RateLimit-Limit"] == "60"
        assert "Retry-After" in response.headers

    @pytest.mark.asyncio
    async def test_retry_after_header_matches_reset_time(self, async_client, auth_headers, test_user):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        set_rate_limiter(limiter)
        for _ in range(60):
            last = await limiter.check(f"general:user:{test_user.id}", 60, 60_000)
        clock.now = last.reset_time - 5_000

        response = await async_client.post("/api/subscription/sync-status", headers=auth_headers)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "5"
        assert response.json()["retryAfter"] == 5
        assert response.headers["X-RateLimit-Reset"] == str(last.reset_time)
