"""
Маршруты пользователей: регистрация и ежедневный бонус
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shared.money import format_units
from arb_api.deps import active_user_id, get_db, risk_guard
from arb_api.services.daily_bonus_service import DailyBonusService
from arb_api.services.policy import Operation
from arb_api.services.referral_service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


class RegisterRequest(BaseModel):
    telegram_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    referrer_telegram_id: Optional[int] = None
    country: Optional[str] = None
    is_premium: bool = False


@router.post("/register")
async def register(body: RegisterRequest, session: AsyncSession = Depends(get_db)):
    """
    Регистрация после аутентификации Telegram; повторный вызов возвращает существующего пользователя
    """
    user, created = await ReferralService.register_user(
        session,
        body.telegram_id,
        body.username,
        body.first_name,
        referrer_telegram_id=body.referrer_telegram_id,
        country=body.country,
        is_premium=body.is_premium
    )
    return {
        "success": True,
        "data": {
            "user_id": user.id,
            "created": created,
            "referrer_id": user.referrer_id,
            "country": user.country,
        }
    }


@router.post("/me/daily-claim", dependencies=[Depends(risk_guard(Operation.GENERAL_API))])
async def daily_claim(
    user_id: int = Depends(active_user_id),
    session: AsyncSession = Depends(get_db)
):
    claim = await DailyBonusService.claim(session, user_id)
    return {
        "success": True,
        "data": {
            "amount": format_units(claim.amount_nano, 4),
            "amount_nano": str(claim.amount_nano),
            "streak": claim.streak,
        }
    }


@router.get("/me/daily-claim", dependencies=[Depends(risk_guard(Operation.GENERAL_API))])
async def daily_claim_status(
    user_id: int = Depends(active_user_id),
    session: AsyncSession = Depends(get_db)
):
    status = await DailyBonusService.get_status(session, user_id)
    status["next_reward_nano"] = str(status["next_reward_nano"])
    return {"success": True, "data": status}
