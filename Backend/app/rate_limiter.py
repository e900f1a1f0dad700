"""
Rate Limiting

Fixed-window counters keyed by (scope, client IP):

- Redis backend (REDIS_URL set): INCR + EXPIRE, shared by every worker and
  instance
- In-memory backend: same semantics inside one process; used when Redis is
  not configured or cannot be reached

Limits:
- /api/blog/{slug}/like: BLOG_LIKE_LIMIT per BLOG_LIKE_WINDOW_SECONDS per IP

Usage:
    from .rate_limiter import rate_limit_dependency

    @router.post("/api/blog/{slug}/like", dependencies=[Depends(rate_limit_dependency(10, 60, "blog-like"))])
    async def like(...):
        ...
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from .core.config import get_settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"


def get_client_ip(request: Request) -> str:
    """X-Forwarded-For first (reverse proxies), then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


@dataclass
class WindowState:
    count: int
    limit: int
    window_seconds: int
    reset_time: int

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def retry_after(self) -> int:
        return max(1, self.reset_time - int(time.time()))


# ────────────────────────────────────────────────────────────────
# Backends
# ────────────────────────────────────────────────────────────────

class InMemoryCounter:
    """Per-process fixed-window counter."""

    def __init__(self):
        # {key: (count, expires_at)}
        self.windows: dict[str, tuple[int, float]] = {}
        self.cleanup_interval = 300
        self.last_cleanup = time.time()

    def _cleanup(self, now: float) -> None:
        if now - self.last_cleanup < self.cleanup_interval:
            return
        for key in [k for k, (_, expires_at) in self.windows.items() if expires_at <= now]:
            del self.windows[key]
        self.last_cleanup = now
        logger.debug(f"Rate limiter cleanup: {len(self.windows)} windows tracked")

    async def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Count one request; returns (count in window, seconds until reset)."""
        now = time.time()
        self._cleanup(now)

        count, expires_at = self.windows.get(key, (0, 0.0))
        if expires_at <= now:
            count, expires_at = 0, now + window_seconds
        count += 1
        self.windows[key] = (count, expires_at)
        return count, max(1, int(expires_at - now))

    def clear(self, match: Optional[str] = None) -> None:
        if match is None:
            self.windows.clear()
            return
        for key in [k for k in self.windows if k.endswith(f":{match}")]:
            del self.windows[key]


class RedisCounter:
    """Shared fixed-window counter on Redis."""

    def __init__(self, url: str):
        self.url = url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
            await client.ping()
            self._redis = client
        return self._redis

    async def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        r = await self._get_redis()
        async with r.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = await pipe.execute()
        if ttl is None or ttl < 0:
            # First hit in the window (or a key left without expiry)
            await r.expire(key, window_seconds)
            ttl = window_seconds
        return int(count), int(ttl)

    async def clear(self, match: Optional[str] = None) -> None:
        r = await self._get_redis()
        pattern = f"{KEY_PREFIX}:*:{match}" if match else f"{KEY_PREFIX}:*"
        async for key in r.scan_iter(match=pattern):
            await r.delete(key)


class RateLimiter:
    """
    Picks the Redis counter when REDIS_URL is configured and reachable,
    otherwise counts in memory.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.memory = InMemoryCounter()
        self.redis = RedisCounter(redis_url) if redis_url else None

    async def hit(self, scope: str, client_id: str, limit: int, window_seconds: int) -> WindowState:
        key = f"{KEY_PREFIX}:{scope}:{client_id}"
        if self.redis is not None:
            try:
                count, ttl = await self.redis.hit(key, window_seconds)
                return WindowState(count, limit, window_seconds, int(time.time()) + ttl)
            except (redis.RedisError, OSError) as e:
                logger.warning(f"[RATE_LIMIT] Redis unavailable, counting in memory: {e}")
        count, ttl = await self.memory.hit(key, window_seconds)
        return WindowState(count, limit, window_seconds, int(time.time()) + ttl)


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(get_settings().redis_url)
    return _rate_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    """Swap the process-wide limiter (tests, or reconfiguration)."""
    global _rate_limiter
    _rate_limiter = limiter


async def clear_rate_limits(ip_address: Optional[str] = None) -> None:
    """Clear limits for one IP or for everyone."""
    limiter = get_rate_limiter()
    limiter.memory.clear(ip_address)
    if limiter.redis is not None:
        try:
            await limiter.redis.clear(ip_address)
        except (redis.RedisError, OSError) as e:
            logger.warning(f"[RATE_LIMIT] Could not clear Redis counters: {e}")
    logger.info(f"Cleared rate limits for {ip_address or 'all IPs'}")


# ────────────────────────────────────────────────────────────────
# FastAPI Dependencies
# ────────────────────────────────────────────────────────────────

def rate_limit_dependency(max_requests: int, window_seconds: int = 60, scope: Optional[str] = None):
    """
    Create a rate limit dependency for FastAPI routes.

    ``scope`` names the counter; routes sharing a scope share a budget.
    Defaults to the request path.
    """
    async def dependency(request: Request):
        client_ip = get_client_ip(request)
        counter_scope = scope or request.url.path
        window = await get_rate_limiter().hit(counter_scope, client_ip, max_requests, window_seconds)

        if not window.allowed:
            logger.warning(
                f"[RATE_LIMIT] Blocked request from {client_ip} to {counter_scope}: "
                f"{window.count}/{window.limit} in {window.window_seconds}s window"
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={
                    "Retry-After": str(window.retry_after),
                    "X-RateLimit-Limit": str(window.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(window.reset_time),
                },
            )

        request.state.rate_limit_headers = {
            "X-RateLimit-Limit": str(window.limit),
            "X-RateLimit-Remaining": str(window.remaining),
            "X-RateLimit-Reset": str(window.reset_time),
        }
        return None

    return dependency


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Copies the headers stored by rate_limit_dependency onto the response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        headers = getattr(request.state, "rate_limit_headers", None)
        if headers:
            for header, value in headers.items():
                response.headers[header] = value
        return response
