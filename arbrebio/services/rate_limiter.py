"""Per-client-IP admission control for the public write endpoints.

Two interchangeable limiters share the ``is_allowed(key)`` contract:

- ``SlidingWindowRateLimiter`` keeps a count and window start per key in
  process memory. Buckets are reset when their window has elapsed, and
  expired buckets are pruned once the map grows past ``max_buckets``.
- ``RedisWindowRateLimiter`` keeps the same counter in Redis (INCR + EXPIRE)
  so the limit holds across several worker processes.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from fastapi import Request
from redis.asyncio import Redis
from redis.exceptions import RedisError

from arbrebio.config import get_settings
from arbrebio.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class _Bucket:
    count: int
    window_start: float


class SlidingWindowRateLimiter:
    """In-process rate limiter keyed by client IP.

    Not persisted and not shared between processes; state is lost on restart.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        max_buckets: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_buckets = max_buckets
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        bucket = self._buckets.get(key)

        if bucket is None or now - bucket.window_start > self.window_seconds:
            if bucket is None and len(self._buckets) >= self.max_buckets:
                self.prune(now)
            self._buckets[key] = _Bucket(count=1, window_start=now)
            return True

        bucket.count += 1
        return bucket.count <= self.max_requests

    def prune(self, now: Optional[float] = None) -> int:
        """Drop buckets whose window has elapsed. Returns the number removed."""
        if now is None:
            now = self._clock()
        expired = [
            key for key, bucket in self._buckets.items()
            if now - bucket.window_start > self.window_seconds
        ]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired rate-limit buckets")
        return len(expired)

    def count_for(self, key: str) -> int:
        bucket = self._buckets.get(key)
        return bucket.count if bucket else 0

    def __len__(self) -> int:
        return len(self._buckets)

    def reset(self) -> None:
        self._buckets.clear()

    async def close(self) -> None:
        self.reset()


class RedisWindowRateLimiter:
    """Fixed-window counter in Redis shared by all instances."""

    KEY_PREFIX = "forms_ratelimit"

    def __init__(self, redis_url: str, max_requests: int = 10, window_seconds: int = 60):
        self.redis_url = redis_url
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._redis: Optional[Redis] = None

    async def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def is_allowed(self, key: str) -> bool:
        try:
            redis = await self._get_redis()
            full_key = f"{self.KEY_PREFIX}:{key}"

            current = await redis.incr(full_key)
            if current == 1:
                await redis.expire(full_key, self.window_seconds)
            return current <= self.max_requests
        except RedisError as e:
            logger.warning(f"Redis unavailable - rate limiting disabled for this request: {type(e).__name__}")
            return True

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None


RateLimiter = Union[SlidingWindowRateLimiter, RedisWindowRateLimiter]

_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide form rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        if settings.redis_url:
            _rate_limiter = RedisWindowRateLimiter(
                settings.redis_url,
                max_requests=settings.rate_limit_max_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        else:
            _rate_limiter = SlidingWindowRateLimiter(
                max_requests=settings.rate_limit_max_requests,
                window_seconds=settings.rate_limit_window_seconds,
                max_buckets=settings.rate_limit_max_buckets,
            )
    return _rate_limiter


async def cleanup_rate_limiter() -> None:
    """Cleanup rate limiter on shutdown."""
    global _rate_limiter
    if _rate_limiter:
        await _rate_limiter.close()
        _rate_limiter = None


def client_ip(request: Request) -> str:
    """Best-effort client address, honouring the reverse proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def rate_limit_forms(request: Request) -> None:
    """Rate limit dependency for the public form endpoints."""
    # Skip rate limiting for OPTIONS (CORS preflight)
    if request.method == "OPTIONS":
        return
    limiter = get_rate_limiter()
    ip = client_ip(request)
    if isinstance(limiter, RedisWindowRateLimiter):
        allowed = await limiter.is_allowed(ip)
    else:
        allowed = limiter.is_allowed(ip)
    if not allowed:
        logger.warning(f"Rate limit exceeded for {ip} on {request.url.path}")
        raise RateLimitExceeded()
