"""
Сервис заданий: старт оффера и истечение брошенных заданий
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import TASK_EXPIRY_HOURS
from shared.database import User, UserStatus, Offer, Task, TaskStatus
from shared.errors import AccountRestrictedError, ConflictError, NotFoundError, ValidationError
from shared.validation import normalize_country

logger = logging.getLogger(__name__)


def active_key(user_id: int, offer_id: int) -> str:
    return f"{user_id}:{offer_id}"


class TaskService:
    """Сервис для работы с заданиями"""

    @staticmethod
    def _check_targeting(user: User, offer: Offer, device: Optional[str], country: Optional[str], now: datetime):
        """Проверка таргетинга оффера; бросает ValidationError"""
        user_country = normalize_country(country) or normalize_country(user.country)
        if offer.countries and user_country not in offer.countries:
            raise ValidationError("This offer is not available in your country", code="OFFER_NOT_AVAILABLE")

        if device and offer.devices and device.lower() not in offer.devices:
            raise ValidationError("This offer is not available on your device", code="OFFER_NOT_AVAILABLE")

        if offer.min_account_age_days:
            account_age = (now - user.created_at).days
            if account_age < offer.min_account_age_days:
                raise ValidationError(
                    f"Your account must be at least {offer.min_account_age_days} days old",
                    code="ACCOUNT_TOO_NEW"
                )

        if offer.premium_required and not user.is_premium:
            raise ValidationError("This offer requires Telegram Premium", code="PREMIUM_REQUIRED")

    @staticmethod
    async def start_task(
        session: AsyncSession,
        user_id: int,
        offer_id: int,
        registry=None,
        device: Optional[str] = None,
        country: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[Task, str]:
        """
        Начать выполнение оффера

        Не больше одного незавершённого задания на (user, offer):
        гарантируется уникальным active_key на уровне БД.

        Returns:
            tuple[Task, str]: (задание, ссылка для перехода)
        """
        now = now or datetime.now()

        user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        if user.status != UserStatus.ACTIVE:
            raise AccountRestrictedError()

        offer = await session.get(Offer, offer_id)
        if offer is None or not offer.is_active:
            raise NotFoundError("Offer")

        TaskService._check_targeting(user, offer, device, country, now)

        key = active_key(user_id, offer_id)
        result = await session.execute(select(Task.id).where(Task.active_key == key))
        if result.scalar_one_or_none() is not None:
            raise ConflictError("You already have this offer in progress", code="TASK_ALREADY_STARTED")

        task = Task(
            user_id=user_id,
            offer_id=offer_id,
            session_token=secrets.token_hex(16),
            status=TaskStatus.STARTED,
            payout_nano=offer.user_payout_nano,
            active_key=key,
            started_at=now
        )

        try:
            session.add(task)
            await session.commit()
        except IntegrityError:
            # Параллельный старт успел первым
            await session.rollback()
            logger.warning(f"Concurrent task start for user {user_id}, offer {offer_id}")
            raise ConflictError("You already have this offer in progress", code="TASK_ALREADY_STARTED")
        except Exception as e:
            await session.rollback()
            logger.error(f"Error starting task for user {user_id}, offer {offer_id}: {e}")
            raise

        provider = registry.get(offer.network) if registry else None
        if provider is not None:
            tracking_url = provider.generate_tracking_url(offer.external_id, task.session_token, user_id)
        else:
            tracking_url = offer.tracking_url

        logger.info(f"Task {task.id} started: user {user_id}, offer {offer_id}, payout {task.payout_nano} nano")

        return task, tracking_url

    @staticmethod
    async def expire_stale_tasks(
        session: AsyncSession,
        older_than: timedelta = timedelta(hours=TASK_EXPIRY_HOURS),
        now: Optional[datetime] = None
    ) -> int:
        """
        Перевести брошенные STARTED задания в REJECTED и освободить слот (user, offer)

        Returns:
            Количество истёкших заданий
        """
        cutoff = (now or datetime.now()) - older_than

        try:
            result = await session.execute(
                update(Task)
                .where(Task.status == TaskStatus.STARTED, Task.started_at < cutoff)
                .values(status=TaskStatus.REJECTED, active_key=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Error expiring stale tasks: {e}")
            raise

        expired = result.rowcount or 0
        if expired:
            logger.info(f"Expired {expired} stale tasks started before {cutoff}")
        return expired
