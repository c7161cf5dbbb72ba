"""
Адаптивный rate limit по уровню риска

Счётчики best-effort: потеря при рестарте допустима.
"""
import logging
import time
from dataclasses import dataclass
from math import ceil
from typing import Callable, Dict, Optional, Tuple

from shared.config import RATE_LIMIT_WINDOW_SECONDS
from arb_api.services.policy import RATE_LIMITS
from arb_api.services.risk_scorer import RiskLevel

logger = logging.getLogger(__name__)


@dataclass
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # unix time
    retry_after: int  # секунд до сброса окна

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(ceil(self.reset_at)),
        }


class MemoryRateLimitStore:
    """
    Счётчики в памяти процесса: user_id -> (count, reset_at)
    """

    def __init__(self, clock: Callable[[], float] = time.time, max_entries: int = 100_000):
        self.clock = clock
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[int, float]] = {}

    async def increment(self, key: str, window: int) -> Tuple[int, float]:
        now = self.clock()
        count, reset_at = self._entries.get(key, (0, 0.0))
        if reset_at <= now:
            count, reset_at = 0, now + window
        count += 1
        self._entries[key] = (count, reset_at)

        if len(self._entries) > self.max_entries:
            self.evict_expired()

        return count, reset_at

    def evict_expired(self):
        now = self.clock()
        expired = [key for key, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]


class RedisRateLimitStore:
    """
    Счётчики в Redis (общие для всех процессов API)
    """

    def __init__(self, client, prefix: str = "rate_limit:adaptive", clock: Callable[[], float] = time.time):
        self.client = client
        self.prefix = prefix
        self.clock = clock

    async def increment(self, key: str, window: int) -> Tuple[int, float]:
        redis_key = f"{self.prefix}:{key}"
        count = await self.client.incr(redis_key)
        if count == 1:
            await self.client.pexpire(redis_key, window * 1000)
        ttl_ms = await self.client.pttl(redis_key)
        if ttl_ms is None or ttl_ms < 0:
            # ключ без TTL (гонка между INCR и PEXPIRE): выставляем заново
            await self.client.pexpire(redis_key, window * 1000)
            ttl_ms = window * 1000
        return int(count), self.clock() + ttl_ms / 1000


class AdaptiveRateLimiter:
    """Лимит запросов в минуту: LOW=60, MEDIUM=30, HIGH=10, CRITICAL=5"""

    def __init__(self, store, window: int = RATE_LIMIT_WINDOW_SECONDS, clock: Optional[Callable[[], float]] = None):
        self.store = store
        self.window = window
        self.clock = clock or getattr(store, "clock", time.time)

    async def hit(self, user_id: int, level: RiskLevel) -> RateLimitStatus:
        """
        Зарегистрировать запрос пользователя и проверить лимит
        """
        limit = RATE_LIMITS[level]
        try:
            count, reset_at = await self.store.increment(str(user_id), self.window)
        except Exception as e:
            logger.error(f"Rate limit store unavailable, allowing request for user {user_id}: {e}")
            return RateLimitStatus(True, limit, limit, self.clock() + self.window, 0)

        retry_after = max(0, ceil(reset_at - self.clock()))
        allowed = count <= limit

        if not allowed:
            logger.warning(
                f"Adaptive rate limit exceeded for user {user_id}: "
                f"count={count}, limit={limit}, level={level.value}"
            )

        return RateLimitStatus(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            retry_after=retry_after
        )
