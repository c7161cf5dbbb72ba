"""
Журнал действий администраторов
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    session: AsyncSession,
    actor_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id,
    details: Optional[dict] = None,
    actor_type: str = "ADMIN"
) -> AuditLog:
    """Добавить запись в сессию; коммит делает вызывающий код"""
    entry = AuditLog(
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details=details or {}
    )
    session.add(entry)
    logger.info(f"Audit: {actor_type} {actor_id} {action} {entity_type} {entity_id}")
    return entry
