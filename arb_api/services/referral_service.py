"""
Сервис реферальной системы: регистрация и комиссии по трём уровням
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import REFERRAL_RATES, MAX_REFERRAL_DEPTH
from shared.database import User, Task, TransactionType, ReferralEarning
from shared.money import apply_rate
from shared.validation import normalize_country
from arb_api.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)


class ReferralService:
    """Сервис для работы с реферальной системой"""

    @staticmethod
    async def register_user(
        session: AsyncSession,
        telegram_id: int,
        username: Optional[str],
        first_name: Optional[str],
        referrer_telegram_id: Optional[int] = None,
        country: Optional[str] = None,
        is_premium: bool = False
    ) -> tuple[User, bool]:
        """
        Создание пользователя с реферером

        Реферер задаётся один раз при создании и должен быть старше
        нового пользователя, поэтому граф рефералов всегда лес.

        Returns:
            tuple[User, bool]: (пользователь, создан_ли_новый)
        """
        result = await session.execute(
            select(User).where(User.telegram_id == telegram_id)
        )
        existing_user = result.scalar_one_or_none()

        if existing_user:
            logger.info(f"User {telegram_id} already exists")
            return existing_user, False

        referrer: Optional[User] = None
        if referrer_telegram_id is not None:
            if referrer_telegram_id == telegram_id:
                logger.warning(f"User {telegram_id} tried to refer themselves")
            else:
                result = await session.execute(
                    select(User).where(User.telegram_id == referrer_telegram_id)
                )
                referrer = result.scalar_one_or_none()
                if not referrer:
                    logger.warning(f"Referrer {referrer_telegram_id} not found")

        now = datetime.now()
        if referrer and referrer.created_at > now:
            logger.warning(f"Referrer {referrer_telegram_id} is newer than user {telegram_id}, ignoring")
            referrer = None

        try:
            user = User(
                telegram_id=telegram_id,
                username=username,
                first_name=first_name,
                country=normalize_country(country) or None,
                is_premium=is_premium,
                created_at=now,
                referrer_id=referrer.id if referrer else None
            )
            session.add(user)
            await session.flush()

            await session.commit()

        except IntegrityError:
            # Параллельная регистрация того же telegram_id
            await session.rollback()
            result = await session.execute(
                select(User).where(User.telegram_id == telegram_id)
            )
            logger.info(f"User {telegram_id} registered concurrently")
            return result.scalar_one(), False

        except Exception as e:
            await session.rollback()
            logger.error(f"Error registering user {telegram_id}: {e}")
            raise

        if referrer:
            logger.info(f"User {telegram_id} registered, referred by {referrer_telegram_id}")
        else:
            logger.info(f"User {telegram_id} registered")

        return user, True

    @staticmethod
    async def distribute_commissions(
        session: AsyncSession,
        task: Task,
        owner_id: int,
        base_amount: int
    ) -> List[ReferralEarning]:
        """
        Начислить комиссии предкам владельца задания (до трёх уровней)

        Каждый уровень считается от одной и той же базы с округлением вниз.
        Строка ReferralEarning уникальна по (task, tier), поэтому повторный
        вызов для того же задания ничего не начисляет. Коммит делает вызывающий код.
        """
        earnings = []
        visited = {owner_id}
        current_id = owner_id

        for tier in range(1, MAX_REFERRAL_DEPTH + 1):
            result = await session.execute(
                select(User.referrer_id).where(User.id == current_id)
            )
            referrer_id = result.scalar_one_or_none()

            if referrer_id is None:
                break
            if referrer_id in visited:
                logger.error(f"Referral cycle detected at user {current_id}, stopping fan-out")
                break

            visited.add(referrer_id)
            current_id = referrer_id

            numerator, denominator = REFERRAL_RATES[tier]
            commission = apply_rate(base_amount, numerator, denominator)
            if commission <= 0:
                continue

            result = await session.execute(
                select(ReferralEarning.id).where(
                    ReferralEarning.task_id == task.id,
                    ReferralEarning.tier == tier
                )
            )
            if result.scalar_one_or_none() is not None:
                logger.warning(f"Tier {tier} commission for task {task.id} already paid, skipping")
                continue

            earning = ReferralEarning(
                referrer_id=referrer_id,
                referred_id=owner_id,
                tier=tier,
                task_id=task.id,
                amount_nano=commission
            )
            session.add(earning)
            await session.flush()

            await LedgerService.credit(
                session=session,
                user_id=referrer_id,
                amount=commission,
                transaction_type=TransactionType.REFERRAL_BONUS,
                reference_id=task.id,
                reference_type="task",
                description=f"Tier {tier} referral commission"
            )

            earnings.append(earning)
            logger.info(f"Tier {tier} commission: {commission} nano to user {referrer_id} for task {task.id}")

        return earnings

    @staticmethod
    async def get_referral_stats(session: AsyncSession, user_id: int) -> Dict:
        """
        Статистика рефералов по уровням
        """
        tiers = {}
        level_ids = [user_id]

        for tier in range(1, MAX_REFERRAL_DEPTH + 1):
            result = await session.execute(
                select(User.id).where(User.referrer_id.in_(level_ids))
            )
            level_ids = list(result.scalars().all())

            earned = await session.execute(
                select(func.coalesce(func.sum(ReferralEarning.amount_nano), 0)).where(
                    ReferralEarning.referrer_id == user_id,
                    ReferralEarning.tier == tier
                )
            )
            tiers[tier] = {
                "count": len(level_ids),
                "earned_nano": int(earned.scalar_one()),
            }

            if not level_ids:
                # глубже никого нет
                for deeper in range(tier + 1, MAX_REFERRAL_DEPTH + 1):
                    tiers[deeper] = {"count": 0, "earned_nano": 0}
                break

        return {
            "tiers": tiers,
            "total_referrals": sum(t["count"] for t in tiers.values()),
            "total_earned_nano": sum(t["earned_nano"] for t in tiers.values()),
        }
