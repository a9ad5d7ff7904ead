"""Fixed-window rate limiting on top of ``limits`` — in-process or shared Redis storage.

``check(key, max_requests, window_ms)`` counts a hit against the window for
``key``. Within a window the count grows until ``max_requests``; once the
window expires the next request opens a new one with a count of 1. Bursts
straddling a window boundary are allowed.

Expired windows are dropped by the storage itself: ``MemoryStorage`` runs its
own expiry task and Redis keys carry a TTL.
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse
from limits import RateLimitItem, RateLimitItemPerSecond
from limits.aio.storage import MemoryStorage, RedisStorage, Storage
from limits.aio.strategies import FixedWindowRateLimiter

from kentra.config import get_settings
from kentra.constants import RATE_LIMIT_NAMESPACE, RATE_LIMITS

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    # Same wall clock the limits storages stamp window expiry with
    return time.time() * 1000


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int


RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    name: RateLimitConfig(max_requests, window_ms)
    for name, (max_requests, window_ms) in RATE_LIMITS.items()
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds
    retry_after: int = 0  # seconds, only set when denied


class RateLimitExceeded(Exception):
    """Raised by the ``rate_limit`` dependency when a key is over its limit."""

    def __init__(self, limit: int, reset_time: int, retry_after: int):
        self.limit = limit
        self.reset_time = reset_time
        self.retry_after = retry_after
        super().__init__(f"Too many requests. Please try again in {retry_after} seconds.")


def _rate_limit_item(max_requests: int, window_ms: int) -> RateLimitItem:
    return RateLimitItemPerSecond(
        max_requests, max(1, window_ms // 1000), namespace=RATE_LIMIT_NAMESPACE
    )


class RateLimiter:
    """Fixed-window limiter over a ``limits`` async storage.

    The default ``MemoryStorage`` keeps windows in this process only and loses
    them on restart; pass a ``RedisStorage`` to share counters between
    instances. ``clock`` is the time source for ``retry_after`` and has to
    agree with the storage's clock.
    """

    def __init__(self, storage: Storage | None = None, clock: Callable[[], float] = _now_ms):
        self.storage = storage or MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self.storage)
        self._clock = clock

    async def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        item = _rate_limit_item(max_requests, window_ms)
        allowed = await self._strategy.hit(item, key)
        stats = await self._strategy.get_window_stats(item, key)

        reset_time = int(stats.reset_time * 1000)
        if allowed:
            return RateLimitResult(allowed=True, remaining=stats.remaining, reset_time=reset_time)
        retry_after = max(1, math.ceil((reset_time - self._clock()) / 1000))
        return RateLimitResult(allowed=False, remaining=0, reset_time=reset_time, retry_after=retry_after)

    async def reset(self, key: str, max_requests: int, window_ms: int) -> None:
        """Forget the current window for ``key``."""
        await self._strategy.clear(_rate_limit_item(max_requests, window_ms), key)

    async def clear(self) -> None:
        await self.storage.reset()


_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Return the process-wide limiter for the configured backend."""
    global _limiter
    if _limiter is None:
        settings = get_settings()
        if settings.rate_limit_backend == "redis":
            _limiter = RateLimiter(RedisStorage(f"async+{settings.redis_url}", implementation="redispy"))
        else:
            _limiter = RateLimiter()
    return _limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    """Swap the process-wide limiter (tests, or None to rebuild from settings)."""
    global _limiter
    _limiter = limiter


def get_client_identifier(request: Request) -> str:
    """Best guess at the caller's IP behind Cloudflare / a reverse proxy."""
    headers = request.headers
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(name: str, key_func: Callable[[Request], str] | None = None):
    """Build a FastAPI dependency enforcing the named limit.

    Counters are namespaced by limit name, so one caller's searches do not
    eat into its checkout budget.
    """
    config = RATE_LIMIT_CONFIGS[name]

    async def dependency(request: Request) -> RateLimitResult:
        identifier = key_func(request) if key_func else get_client_identifier(request)
        result = await get_rate_limiter().check(
            f"{name}:{identifier}", config.max_requests, config.window_ms
        )
        if not result.allowed:
            logger.warning("Rate limit '%s' exceeded for %s", name, identifier)
            raise RateLimitExceeded(config.max_requests, result.reset_time, result.retry_after)
        return result

    return dependency


def rate_limit_response(exc: RateLimitExceeded) -> JSONResponse:
    """429 response with the standard rate limit headers."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": str(exc),
            "retryAfter": exc.retry_after,
        },
        headers={
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.reset_time),
        },
    )
