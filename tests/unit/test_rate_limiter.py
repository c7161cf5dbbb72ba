"""
Tests for the adaptive rate limiter.

Covers:
- Fixed window per user, limit by risk level
- Window reset
- Redis-backed store
- Store failure fails open
"""

from unittest.mock import AsyncMock

import pytest

from arb_api.services.rate_limiter import (
    AdaptiveRateLimiter, MemoryRateLimitStore, RedisRateLimitStore
)
from arb_api.services.risk_scorer import RiskLevel


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return AdaptiveRateLimiter(MemoryRateLimitStore(clock=clock), window=60)


class TestAdaptiveRateLimiter:
    """Test limits per risk level."""

    @pytest.mark.asyncio
    async def test_high_risk_allows_ten_per_minute(self, limiter):
        statuses = [await limiter.hit(1, RiskLevel.HIGH) for _ in range(11)]

        assert all(s.allowed for s in statuses[:10])
        assert statuses[10].allowed is False
        assert statuses[10].limit == 10
        assert statuses[10].remaining == 0
        assert statuses[10].retry_after == 60

    @pytest.mark.asyncio
    async def test_users_are_counted_separately(self, limiter):
        for _ in range(5):
            await limiter.hit(1, RiskLevel.CRITICAL)

        assert (await limiter.hit(1, RiskLevel.CRITICAL)).allowed is False
        assert (await limiter.hit(2, RiskLevel.CRITICAL)).allowed is True

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter, clock):
        for _ in range(6):
            await limiter.hit(1, RiskLevel.CRITICAL)
        assert (await limiter.hit(1, RiskLevel.CRITICAL)).allowed is False

        clock.now += 61
        status = await limiter.hit(1, RiskLevel.CRITICAL)
        assert status.allowed is True
        assert status.remaining == 4

    @pytest.mark.asyncio
    async def test_headers(self, limiter, clock):
        status = await limiter.hit(1, RiskLevel.LOW)
        headers = status.headers()

        assert headers["X-RateLimit-Limit"] == "60"
        assert headers["X-RateLimit-Remaining"] == "59"
        assert headers["X-RateLimit-Reset"] == str(int(clock.now + 60))

    @pytest.mark.asyncio
    async def test_store_failure_allows_request(self):
        store = AsyncMock()
        store.increment = AsyncMock(side_effect=ConnectionError("redis down"))
        limiter = AdaptiveRateLimiter(store, window=60, clock=FakeClock())

        status = await limiter.hit(1, RiskLevel.CRITICAL)
        assert status.allowed is True


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_evicts_expired_entries(self, clock):
        store = MemoryRateLimitStore(clock=clock, max_entries=2)
        await store.increment("1", 60)
        await store.increment("2", 60)
        clock.now += 120
        await store.increment("3", 60)

        assert set(store._entries) == {"3"}


class TestRedisStore:
    """Test Redis-backed counters with a mocked client."""

    @pytest.mark.asyncio
    async def test_first_hit_sets_expiry(self, clock):
        client = AsyncMock()
        client.incr = AsyncMock(return_value=1)
        client.pttl = AsyncMock(return_value=60_000)
        store = RedisRateLimitStore(client, clock=clock)

        count, reset_at = await store.increment("42", 60)

        assert count == 1
        assert reset_at == clock.now + 60
        client.incr.assert_awaited_once_with("rate_limit:adaptive:42")
        client.pexpire.assert_awaited_once_with("rate_limit:adaptive:42", 60_000)

    @pytest.mark.asyncio
    async def test_missing_ttl_is_repaired(self, clock):
        client = AsyncMock()
        client.incr = AsyncMock(return_value=3)
        client.pttl = AsyncMock(return_value=-1)
        store = RedisRateLimitStore(client, clock=clock)

        count, reset_at = await store.increment("42", 60)

        assert count == 3
        assert reset_at == clock.now + 60
        client.pexpire.assert_awaited_once_with("rate_limit:adaptive:42", 60_000)
