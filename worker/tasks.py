"""
Фоновые задачи worker: синхронизация офферов и отложенный антифрод-анализ
"""
import logging
from typing import Dict, Optional

from arb_api.cpa.registry import ProviderRegistry, sync_offers
from arb_api.services.risk_service import RiskService

logger = logging.getLogger(__name__)


async def run_offer_sync(session_factory, registry: ProviderRegistry) -> Optional[Dict[str, int]]:
    """
    Один проход синхронизации офферов; ошибки сети не роняют worker
    """
    try:
        return await sync_offers(session_factory, registry)
    except Exception as e:
        logger.error(f"Offer sync failed: {e}", exc_info=True)
        return None


async def process_fraud_analysis(job_data: Dict, session_factory, risk_service: RiskService) -> bool:
    """
    Обработка задачи антифрод-анализа после одобренного постбэка

    Args:
        job_data: {"user_id": int, "task_id": str}

    Returns:
        True если открыт новый алерт скорости заработка
    """
    user_id = job_data.get("user_id")
    task_id = job_data.get("task_id")

    if not isinstance(user_id, int):
        logger.error(f"Malformed fraud analysis job: {job_data}")
        return False

    logger.info(f"Analyzing earning velocity for user {user_id} (task {task_id})")

    async with session_factory() as session:
        try:
            return await risk_service.flag_velocity(session, user_id)
        except Exception as e:
            await session.rollback()
            logger.error(f"Error in fraud analysis for user {user_id}: {e}", exc_info=True)
            return False
