"""
Health check endpoints: процесс, БД, Redis
"""
import logging
from fastapi import APIRouter, Request, Response
from sqlalchemy import text

from shared.redis_client import get_redis, fraud_analysis_queue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


def _unhealthy(response: Response, service: str, error: Exception) -> dict:
    logger.error(f"{service} health check failed: {error}")
    response.status_code = 503
    return {"status": "unhealthy", "service": service, "error": str(error)}


@router.get("")
async def health_check():
    return {"status": "healthy", "service": "Traffic Arb API"}


@router.get("/db")
async def health_check_db(request: Request, response: Response):
    session_factory = request.app.state.session_factory
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            dialect = session.bind.dialect.name
    except Exception as e:
        return _unhealthy(response, "database", e)

    return {"status": "healthy", "service": "database", "dialect": dialect}


@router.get("/redis")
async def health_check_redis(response: Response):
    """
    Redis и глубина очереди антифрод-анализа
    """
    try:
        client = await get_redis()
        await client.ping()
        queue_size = await fraud_analysis_queue.size()
    except Exception as e:
        return _unhealthy(response, "redis", e)

    return {"status": "healthy", "service": "redis", "fraud_queue_size": queue_size}
