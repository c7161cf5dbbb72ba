"""
Redis: общий клиент, очередь отложенных задач worker
(счётчики rate limit живут в arb_api.services.rate_limiter)
"""
import logging
import json
from typing import Optional
import redis.asyncio as redis

from shared.config import REDIS_URL

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Ленивая инициализация общего клиента"""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True
        )
        logger.info("Redis client initialized")

    return _redis_client


async def close_redis():
    global _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis client closed")


class RedisQueue:
    """
    FIFO очередь на Redis LIST (RPUSH / BLPOP)

    Задачи, которые не разбираются как JSON-объект, уходят
    в список "<name>:dead" и не возвращаются потребителю.
    """

    def __init__(self, queue_name: str, client: Optional[redis.Redis] = None):
        self.queue_name = queue_name
        self.dead_letter_name = f"{queue_name}:dead"
        self.redis_client = client

    async def _client(self) -> redis.Redis:
        if self.redis_client is None:
            self.redis_client = await get_redis()
        return self.redis_client

    async def enqueue(self, data: dict):
        client = await self._client()
        await client.rpush(self.queue_name, json.dumps(data))
        logger.debug(f"Enqueued job to {self.queue_name}: {data}")

    async def dequeue(self, timeout: int = 0) -> Optional[dict]:
        """
        Забрать следующую задачу; None по таймауту или если задача битая
        """
        client = await self._client()
        result = await client.blpop(self.queue_name, timeout=timeout)
        if not result:
            return None

        _, raw = result
        try:
            job = json.loads(raw)
        except (TypeError, ValueError):
            job = None

        if not isinstance(job, dict):
            logger.error(f"Dropping malformed job from {self.queue_name}: {raw!r}")
            await client.rpush(self.dead_letter_name, raw)
            return None

        return job

    async def size(self) -> int:
        client = await self._client()
        return await client.llen(self.queue_name)


# Отложенный антифрод-анализ после одобренных постбэков
fraud_analysis_queue = RedisQueue("fraud_analysis_jobs")
