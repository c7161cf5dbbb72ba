"""
Ежедневный бонус с серией

Не больше одного начисления на пользователя в календарный день:
гарантируется уникальной строкой DailyClaim (user_id, claim_date),
которая вставляется в той же транзакции, что и начисление в журнал.
"""
import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import DAILY_BONUS_BASE_NANO, DAILY_BONUS_STREAK_STEP_NANO, DAILY_BONUS_MAX_NANO
from shared.database import DailyClaim, TransactionType, User, UserStatus
from shared.errors import AccountRestrictedError, ConflictError, NotFoundError
from arb_api.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

ALREADY_CLAIMED_MESSAGE = "Daily bonus already claimed today"


def reward_for_streak(streak: int) -> int:
    """Награда за день серии в nano: база + шаг за каждый следующий день, не выше потолка"""
    reward = DAILY_BONUS_BASE_NANO + DAILY_BONUS_STREAK_STEP_NANO * (max(streak, 1) - 1)
    return min(reward, DAILY_BONUS_MAX_NANO)


class DailyBonusService:
    """Сервис ежедневного бонуса"""

    @staticmethod
    async def _claim_on(session: AsyncSession, user_id: int, day: date) -> Optional[DailyClaim]:
        result = await session.execute(
            select(DailyClaim).where(DailyClaim.user_id == user_id, DailyClaim.claim_date == day)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def claim(session: AsyncSession, user_id: int, today: Optional[date] = None) -> DailyClaim:
        """
        Забрать бонус за сегодня

        Если вчера бонус забирался, серия продолжается, иначе начинается с 1.

        Raises:
            ConflictError(ALREADY_CLAIMED): сегодня бонус уже начислен
            AccountRestrictedError: аккаунт SUSPENDED или BANNED
        """
        today = today or date.today()

        result = await session.execute(select(User.status).where(User.id == user_id))
        status = result.scalar_one_or_none()
        if status is None:
            raise NotFoundError("User")
        if status != UserStatus.ACTIVE:
            raise AccountRestrictedError()

        if await DailyBonusService._claim_on(session, user_id, today) is not None:
            raise ConflictError(ALREADY_CLAIMED_MESSAGE, code="ALREADY_CLAIMED")

        previous = await DailyBonusService._claim_on(session, user_id, today - timedelta(days=1))
        streak = previous.streak + 1 if previous else 1
        amount = reward_for_streak(streak)

        claim = DailyClaim(user_id=user_id, claim_date=today, streak=streak, amount_nano=amount)

        try:
            session.add(claim)
            await session.flush()

            await LedgerService.credit(
                session,
                user_id,
                amount,
                TransactionType.DAILY_BONUS,
                reference_type="daily_claim",
                description=f"Daily bonus (day {streak})"
            )

            await session.commit()

        except IntegrityError:
            # Параллельный запрос успел первым
            await session.rollback()
            logger.warning(f"Concurrent daily claim for user {user_id} on {today}")
            raise ConflictError(ALREADY_CLAIMED_MESSAGE, code="ALREADY_CLAIMED")
        except Exception as e:
            await session.rollback()
            logger.error(f"Error claiming daily bonus for user {user_id}: {e}")
            raise

        logger.info(f"🎁 Daily bonus: user {user_id}, day {streak}, {amount} nano")

        return claim

    @staticmethod
    async def get_status(session: AsyncSession, user_id: int, today: Optional[date] = None) -> dict:
        """
        Текущая серия, рекорд и награда за следующий бонус
        """
        today = today or date.today()

        result = await session.execute(
            select(DailyClaim)
            .where(DailyClaim.user_id == user_id)
            .order_by(DailyClaim.claim_date.desc())
            .limit(1)
        )
        last = result.scalar_one_or_none()

        result = await session.execute(
            select(func.max(DailyClaim.streak)).where(DailyClaim.user_id == user_id)
        )
        longest = result.scalar() or 0

        claimed_today = last is not None and last.claim_date == today
        alive = last is not None and last.claim_date >= today - timedelta(days=1)
        current = last.streak if alive else 0

        return {
            "claimed_today": claimed_today,
            "current_streak": current,
            "longest_streak": longest,
            "next_reward_nano": reward_for_streak(current + 1),
        }
