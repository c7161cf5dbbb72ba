"""
Обработка постбэков CPA сетей: идемпотентное зачисление награды

Идемпотентность держится на терминальном статусе задания, а не на факте
получения постбэка: сети повторяют постбэки при любом не-2xx или таймауте.
Переход статуса делается compare-and-swap UPDATE'ом, поэтому из двух
одновременных одинаковых постбэков выигрывает ровно один.
"""
import enum
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import ALLOW_UNSIGNED_POSTBACKS
from shared.database import Task, TaskStatus, TASK_OPEN_STATUSES, TransactionType, User
from shared.errors import NotFoundError, ValidationError
from shared.money import format_units
from arb_api.cpa.base import POSTBACK_APPROVED, POSTBACK_PENDING, POSTBACK_REJECTED
from arb_api.cpa.registry import ProviderRegistry
from arb_api.services.ledger_service import LedgerService
from arb_api.services.referral_service import ReferralService

logger = logging.getLogger(__name__)


class SettlementStatus(str, enum.Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass
class SettlementResult:
    status: SettlementStatus
    task_id: Optional[UUID] = None
    credited_nano: int = 0
    commissions: List[Dict[str, int]] = field(default_factory=list)


class SettlementService:
    """Пайплайн зачисления по постбэку"""

    def __init__(
        self,
        session_factory,
        registry: ProviderRegistry,
        notify_func=None,
        fraud_queue=None,
        allow_unsigned: bool = ALLOW_UNSIGNED_POSTBACKS
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.notify_func = notify_func
        self.fraud_queue = fraud_queue
        self.allow_unsigned = allow_unsigned

    async def handle_postback(self, network: str, params: Dict[str, Any]) -> SettlementResult:
        """
        Разобрать постбэк сети и провести его

        Raises:
            NotFoundError: неизвестная сеть
            ValidationError: в постбэке нет session token
        """
        provider = self.registry.get(network)
        if provider is None:
            raise NotFoundError("Network", details={"network": network})

        postback = provider.parse_postback(params)
        if postback is None:
            logger.warning(f"Malformed {network} postback: {params}")
            raise ValidationError("Malformed postback")

        logger.info(
            f"Received {provider.network} postback: session={postback.session_token}, "
            f"status={postback.status}, payout_cents={postback.payout_cents}"
        )

        return await self.settle(postback.session_token, postback.status, dict(params), network=provider.network)

    def verify_signature(self, network: str, params: Dict[str, Any]) -> bool:
        """
        Проверка HMAC подписи постбэка

        Без настроенного секрета постбэк принимается только если
        это разрешено конфигурацией (development).
        """
        provider = self.registry.get(network)
        secret = self.registry.postback_secret(network)

        if provider is None:
            return False

        if not secret:
            if not self.allow_unsigned:
                logger.warning(f"No postback secret configured for {network}, rejecting unsigned postback")
            return self.allow_unsigned

        provided = provider.extract_signature(params)
        if not provided:
            return False

        expected = provider.expected_signature(params, secret=secret)
        return hmac.compare_digest(expected, provided.strip().lower())

    async def settle(
        self,
        session_token: str,
        external_status: str,
        raw_payload: Dict[str, Any],
        network: Optional[str] = None
    ) -> SettlementResult:
        """
        Провести постбэк по session token

        Ожидаемые бизнес-состояния (неизвестная сессия, повтор, неверная подпись)
        возвращаются результатом. Исключения только инфраструктурные,
        повтор вызова после них безопасен.
        """
        # 1. Поиск задания
        async with self.session_factory() as session:
            result = await session.execute(
                select(Task).where(Task.session_token == session_token)
            )
            task = result.scalar_one_or_none()
            telegram_id = None
            if task is not None:
                owner = await session.get(User, task.user_id)
                telegram_id = owner.telegram_id if owner else None

        if task is None:
            logger.warning(f"Postback for unknown session: {session_token}")
            return SettlementResult(SettlementStatus.NOT_FOUND)

        if network and task.offer.network.upper() != network.upper():
            logger.warning(
                f"Postback network mismatch for task {task.id}: "
                f"got {network}, offer belongs to {task.offer.network}"
            )
            return SettlementResult(SettlementStatus.NOT_FOUND)

        # 2. Повтор для завершённого задания
        if task.status in (TaskStatus.APPROVED, TaskStatus.REJECTED):
            logger.info(f"Task {task.id} already {task.status.value}. Idempotent no-op.")
            return SettlementResult(SettlementStatus.ALREADY_PROCESSED, task.id)

        # 3. Подпись
        if network and not self.verify_signature(network, raw_payload):
            logger.warning(f"Invalid {network} postback signature for session {session_token}")
            return SettlementResult(SettlementStatus.INVALID_SIGNATURE, task.id)

        # 4-5. Переход статуса и начисление одной транзакцией
        if external_status == POSTBACK_APPROVED:
            settlement = await self._approve(task, raw_payload)
        elif external_status == POSTBACK_REJECTED:
            settlement = await self._transition(task, raw_payload, TASK_OPEN_STATUSES, TaskStatus.REJECTED)
        elif external_status == POSTBACK_PENDING:
            settlement = await self._transition(task, raw_payload, (TaskStatus.STARTED,), TaskStatus.PENDING)
        else:
            raise ValidationError(f"Unknown postback status: {external_status}")

        # 6. После коммита: уведомление и отложенный анализ, без влияния на результат
        if settlement.status == SettlementStatus.APPROVED:
            await self._after_approval(task, telegram_id, settlement)

        return settlement

    async def _approve(self, task: Task, raw_payload: Dict[str, Any]) -> SettlementResult:
        async with self.session_factory() as session:
            try:
                now = datetime.now()
                won = await self._compare_and_set(
                    session, task.id, TASK_OPEN_STATUSES,
                    status=TaskStatus.APPROVED,
                    postback_data=raw_payload,
                    postback_received_at=now,
                    completed_at=func.coalesce(Task.completed_at, now),
                    approved_at=now,
                    active_key=None
                )
                if not won:
                    await session.rollback()
                    logger.info(f"Task {task.id} settled concurrently. Idempotent no-op.")
                    return SettlementResult(SettlementStatus.ALREADY_PROCESSED, task.id)

                await LedgerService.credit(
                    session=session,
                    user_id=task.user_id,
                    amount=task.payout_nano,
                    transaction_type=TransactionType.TASK_REWARD,
                    reference_id=task.id,
                    reference_type="task",
                    description=f"Offer: {task.offer.name}"[:255]
                )

                earnings = await ReferralService.distribute_commissions(
                    session, task, task.user_id, task.payout_nano
                )

                await session.commit()

            except Exception as e:
                await session.rollback()
                logger.error(f"Error settling task {task.id}: {e}", exc_info=True)
                raise

        logger.info(
            f"Task {task.id} approved: credited {task.payout_nano} nano to user {task.user_id}, "
            f"{len(earnings)} referral commissions"
        )

        return SettlementResult(
            SettlementStatus.APPROVED,
            task.id,
            credited_nano=task.payout_nano,
            commissions=[
                {"tier": e.tier, "referrer_id": e.referrer_id, "amount_nano": e.amount_nano}
                for e in earnings
            ]
        )

    async def _transition(self, task: Task, raw_payload: Dict[str, Any], allowed: tuple,
                          target: TaskStatus) -> SettlementResult:
        async with self.session_factory() as session:
            try:
                now = datetime.now()
                values = dict(status=target, postback_data=raw_payload, postback_received_at=now)
                if target == TaskStatus.PENDING:
                    values["completed_at"] = now
                else:
                    values["active_key"] = None

                won = await self._compare_and_set(session, task.id, allowed, **values)
                if not won:
                    await session.rollback()
                    return SettlementResult(SettlementStatus.ALREADY_PROCESSED, task.id)

                await session.commit()

            except Exception as e:
                await session.rollback()
                logger.error(f"Error moving task {task.id} to {target.value}: {e}", exc_info=True)
                raise

        logger.info(f"Task {task.id} moved to {target.value}")
        return SettlementResult(SettlementStatus(target.value), task.id)

    @staticmethod
    async def _compare_and_set(session: AsyncSession, task_id: UUID, allowed: tuple, **values) -> bool:
        """UPDATE ... WHERE status IN allowed; True если переход выполнен этим вызовом"""
        result = await session.execute(
            update(Task)
            .where(Task.id == task_id, Task.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _after_approval(self, task: Task, telegram_id: Optional[int], settlement: SettlementResult):
        if self.notify_func and telegram_id:
            try:
                await self.notify_func(
                    telegram_id,
                    f"✅ Offer completed: {task.offer.name}\n"
                    f"💰 Credited: {format_units(settlement.credited_nano, 4)} TON"
                )
            except Exception as e:
                logger.error(f"Error sending notification to user {task.user_id}: {e}")

        if self.fraud_queue is not None:
            try:
                await self.fraud_queue.enqueue({"user_id": task.user_id, "task_id": str(task.id)})
            except Exception as e:
                logger.error(f"Error enqueueing fraud analysis for task {task.id}: {e}")
