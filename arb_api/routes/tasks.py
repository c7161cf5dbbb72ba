"""
Маршруты заданий
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shared.money import format_units
from arb_api.deps import active_user_id, get_db, risk_guard
from arb_api.services.policy import Action, Operation
from arb_api.services.risk_service import GateResult
from arb_api.services.task_service import TaskService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


class StartTaskRequest(BaseModel):
    device: Optional[str] = None  # mobile | desktop | tablet


@router.post("/{offer_id}/start")
async def start_task(
    offer_id: int,
    request: Request,
    body: Optional[StartTaskRequest] = None,
    gate: GateResult = Depends(risk_guard(Operation.TASK_START)),
    user_id: int = Depends(active_user_id),
    session: AsyncSession = Depends(get_db)
):
    """
    Начать оффер: антифрод-гейт, rate limit, затем создание задания
    """
    task, tracking_url = await TaskService.start_task(
        session,
        user_id,
        offer_id,
        registry=request.app.state.registry,
        device=body.device if body else None
    )

    if gate.decision.action == Action.FLAG:
        logger.warning(f"Flagged user {user_id} started task {task.id}")

    return {
        "success": True,
        "data": {
            "task_id": str(task.id),
            "tracking_url": tracking_url,
            "payout": format_units(task.payout_nano, 4),
            "payout_nano": str(task.payout_nano),
            "status": task.status.value,
        }
    }
