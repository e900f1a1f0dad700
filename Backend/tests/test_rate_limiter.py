"""
Fixed-window rate limiting: in-memory counter, Redis fallback and client IPs.
"""
import redis.asyncio as redis
from starlette.requests import Request

from app.rate_limiter import (
    InMemoryCounter,
    RateLimiter,
    clear_rate_limits,
    get_client_ip,
    get_rate_limiter,
)


class TestInMemoryCounter:
    async def test_counts_within_window(self):
        counter = InMemoryCounter()
        assert (await counter.hit("k", 60))[0] == 1
        count, ttl = await counter.hit("k", 60)
        assert count == 2
        assert 1 <= ttl <= 60

    async def test_expired_window_restarts(self):
        counter = InMemoryCounter()
        await counter.hit("k", 60)
        counter.windows["k"] = (5, 0.0)
        assert (await counter.hit("k", 60))[0] == 1

    async def test_clear_by_ip(self):
        counter = InMemoryCounter()
        await counter.hit("ratelimit:blog-like:1.1.1.1", 60)
        await counter.hit("ratelimit:blog-like:2.2.2.2", 60)
        counter.clear("1.1.1.1")
        assert list(counter.windows) == ["ratelimit:blog-like:2.2.2.2"]


class TestRateLimiter:
    async def test_blocks_after_limit(self):
        limiter = RateLimiter(None)
        states = [await limiter.hit("blog-like", "1.1.1.1", 2, 60) for _ in range(3)]

        assert [s.allowed for s in states] == [True, True, False]
        assert states[1].remaining == 0
        assert states[2].retry_after >= 1

    async def test_scopes_and_clients_are_separate(self):
        limiter = RateLimiter(None)
        await limiter.hit("blog-like", "1.1.1.1", 1, 60)
        assert (await limiter.hit("blog-like", "2.2.2.2", 1, 60)).allowed
        assert (await limiter.hit("other", "1.1.1.1", 1, 60)).allowed

    async def test_falls_back_to_memory_when_redis_is_down(self, monkeypatch):
        limiter = RateLimiter("redis://localhost:6390/0")

        async def unavailable(key, window_seconds):
            raise redis.ConnectionError("connection refused")

        monkeypatch.setattr(limiter.redis, "hit", unavailable)

        state = await limiter.hit("blog-like", "1.1.1.1", 5, 60)
        assert state.count == 1
        assert "ratelimit:blog-like:1.1.1.1" in limiter.memory.windows

    async def test_clear_rate_limits_uses_shared_limiter(self):
        limiter = get_rate_limiter()
        await limiter.hit("blog-like", "9.9.9.9", 1, 60)
        await clear_rate_limits("9.9.9.9")
        assert (await limiter.hit("blog-like", "9.9.9.9", 1, 60)).allowed


def make_request(headers=None, client=("10.0.0.1", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_client_ip_prefers_forwarded_for():
    assert get_client_ip(make_request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})) == "203.0.113.7"
    assert get_client_ip(make_request()) == "10.0.0.1"
    assert get_client_ip(make_request(client=None)) == "unknown"
