"""
Сервис выводов

Создание заявки (списание + вставка) и отклонение (возврат + смена статуса)
выполняются одной транзакцией. Все переходы статуса делаются через
compare-and-swap UPDATE, поэтому два админа не обработают заявку дважды.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import (
    ENABLE_WITHDRAWALS, MIN_WITHDRAWAL_NANO, WITHDRAWAL_DAILY_CAP_NANO, MAX_PENDING_WITHDRAWALS
)
from shared.database import (
    User, UserStatus, Withdrawal, WithdrawalStatus, WITHDRAWAL_OPEN_STATUSES, Transaction, TransactionType
)
from shared.errors import (
    AccountRestrictedError, ConflictError, InsufficientBalanceError, InvalidTransitionError,
    NotFoundError, ValidationError
)
from shared.money import format_units
from shared.validation import validate_wallet_address, validate_amount, mask_address
from shared.admin_notifier import notify_withdrawal_request
from arb_api.services.audit import record_audit
from arb_api.services.ledger_service import LedgerService
from arb_api.services.policy import Operation
from arb_api.services.risk_signals import RequestContext
from arb_api.services.ton_verifier import explorer_link

logger = logging.getLogger(__name__)

DAILY_WINDOW = timedelta(hours=24)


class WithdrawalService:
    """Guard вывода и админские переходы"""

    def __init__(
        self,
        risk_service,
        verifier=None,
        notify_func=None,
        admin_send_func=None,
        enabled: bool = ENABLE_WITHDRAWALS,
        min_amount: int = MIN_WITHDRAWAL_NANO,
        daily_cap: int = WITHDRAWAL_DAILY_CAP_NANO,
        max_pending: int = MAX_PENDING_WITHDRAWALS
    ):
        self.risk_service = risk_service
        self.verifier = verifier
        self.notify_func = notify_func
        self.admin_send_func = admin_send_func
        self.enabled = enabled
        self.min_amount = min_amount
        self.daily_cap = daily_cap
        self.max_pending = max_pending

    # ========== Заявка ==========

    async def request_withdrawal(
        self,
        session: AsyncSession,
        user_id: int,
        amount_nano: int,
        wallet_address: str,
        context: Optional[RequestContext] = None
    ) -> Withdrawal:
        """
        Создать заявку на вывод

        Проверки по порядку, до первой неудачной: флаг, статус аккаунта,
        минимум, баланс, число ожидающих заявок, суточный лимит, антифрод.
        """
        # 1. Флаг
        if not self.enabled:
            raise ValidationError("Withdrawals are temporarily disabled", code="WITHDRAWALS_DISABLED")

        result = await session.execute(select(User.status).where(User.id == user_id))
        status = result.scalar_one_or_none()
        if status is None:
            raise NotFoundError("User")
        if status != UserStatus.ACTIVE:
            logger.warning(f"Withdrawal from restricted user {user_id} ({status.value}) rejected")
            raise AccountRestrictedError()

        valid, error = validate_amount(amount_nano)
        if not valid:
            raise ValidationError(error)
        valid, error = validate_wallet_address(wallet_address)
        if not valid:
            raise ValidationError(error, code="INVALID_ADDRESS")
        wallet_address = wallet_address.strip()

        # 2. Минимум
        if amount_nano < self.min_amount:
            raise ValidationError(
                f"Minimum withdrawal is {format_units(self.min_amount)} TON", code="BELOW_MINIMUM"
            )

        # 3. Баланс
        balance = await LedgerService.get_balance(session, user_id)
        if amount_nano > balance["balance_nano"]:
            raise InsufficientBalanceError()

        # 4. Ожидающие заявки
        result = await session.execute(
            select(func.count(Withdrawal.id)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.PENDING
            )
        )
        if (result.scalar() or 0) >= self.max_pending:
            raise ConflictError(
                f"You can have at most {self.max_pending} pending withdrawals", code="TOO_MANY_PENDING"
            )

        # 5. Суточный лимит
        recent = await self.recent_withdrawal_volume(session, user_id)
        if recent + amount_nano > self.daily_cap:
            logger.warning(f"Withdrawal limit exceeded for user {user_id}: recent={recent}, amount={amount_nano}")
            raise ValidationError(
                f"Daily withdrawal limit ({format_units(self.daily_cap)} TON) exceeded. Please try again tomorrow.",
                code="DAILY_LIMIT_EXCEEDED"
            )

        # 6. Антифрод (ошибка оценки блокирует вывод)
        gate = await self.risk_service.gate(user_id, Operation.WITHDRAWAL, context or RequestContext())
        gate.decision.raise_if_blocked()

        # Списание и заявка одной транзакцией
        try:
            withdrawal = Withdrawal(
                id=uuid.uuid4(),
                user_id=user_id,
                amount_nano=amount_nano,
                wallet_address=wallet_address,
                status=WithdrawalStatus.PENDING
            )
            session.add(withdrawal)

            await LedgerService.debit(
                session=session,
                user_id=user_id,
                amount=amount_nano,
                transaction_type=TransactionType.WITHDRAWAL,
                reference_id=withdrawal.id,
                reference_type="withdrawal",
                description=f"Withdrawal to {mask_address(wallet_address)}"
            )

            await session.commit()

        except Exception as e:
            await session.rollback()
            if not isinstance(e, InsufficientBalanceError):
                logger.error(f"Error creating withdrawal for user {user_id}: {e}")
            raise

        logger.info(
            f"Withdrawal {withdrawal.id} created: user {user_id}, "
            f"amount {amount_nano} nano to {mask_address(wallet_address)}"
        )

        try:
            await notify_withdrawal_request(
                user_id, format_units(amount_nano, 4), wallet_address,
                send_func=self.admin_send_func, withdrawal_id=str(withdrawal.id)
            )
        except Exception as e:
            logger.error(f"Error notifying admins about withdrawal {withdrawal.id}: {e}")

        return withdrawal

    @staticmethod
    async def recent_withdrawal_volume(session: AsyncSession, user_id: int,
                                       now: Optional[datetime] = None) -> int:
        """Сумма модулей WITHDRAWAL-транзакций за последние 24 часа"""
        since = (now or datetime.now()) - DAILY_WINDOW
        result = await session.execute(
            select(func.coalesce(func.sum(func.abs(Transaction.amount_nano)), 0)).where(
                Transaction.user_id == user_id,
                Transaction.transaction_type == TransactionType.WITHDRAWAL,
                Transaction.created_at >= since
            )
        )
        return int(result.scalar_one())

    # ========== Админские переходы ==========

    @staticmethod
    async def _get(session: AsyncSession, withdrawal_id) -> Withdrawal:
        withdrawal = await session.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise NotFoundError("Withdrawal", details={"withdrawal_id": str(withdrawal_id)})
        return withdrawal

    @staticmethod
    async def _compare_and_set(session: AsyncSession, withdrawal_id, allowed: tuple,
                               target: WithdrawalStatus, **values):
        """
        Перевести заявку в target, только если текущий статус из allowed

        Raises:
            InvalidTransitionError: статус уже другой (детали для админки)
        """
        result = await session.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal_id, Withdrawal.status.in_(allowed))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await session.execute(select(Withdrawal.status).where(Withdrawal.id == withdrawal_id))
            status = current.scalar_one_or_none()
            if status is None:
                raise NotFoundError("Withdrawal", details={"withdrawal_id": str(withdrawal_id)})
            raise InvalidTransitionError("withdrawal", status.value, target.value)

    async def mark_processing(self, session: AsyncSession, withdrawal_id, admin_id: int) -> Withdrawal:
        """PENDING -> PROCESSING"""
        try:
            await self._compare_and_set(
                session, withdrawal_id, (WithdrawalStatus.PENDING,), WithdrawalStatus.PROCESSING,
                processed_by=admin_id
            )
            record_audit(session, admin_id, "WITHDRAWAL_PROCESSING", "withdrawal", withdrawal_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(f"Withdrawal {withdrawal_id} marked processing by admin {admin_id}")
        return await self._refreshed(session, withdrawal_id)

    async def approve(
        self,
        session: AsyncSession,
        withdrawal_id,
        admin_id: int,
        tx_hash: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Withdrawal:
        """
        PENDING/PROCESSING -> COMPLETED

        Баланс не меняется: сумма уже списана при создании заявки.
        Проверка транзакции в сети выполняется до открытия транзакции БД.
        """
        withdrawal = await self._get(session, withdrawal_id)
        if withdrawal.status not in WITHDRAWAL_OPEN_STATUSES:
            raise InvalidTransitionError("withdrawal", withdrawal.status.value, WithdrawalStatus.COMPLETED.value)

        amount_nano = withdrawal.amount_nano
        wallet_address = withdrawal.wallet_address
        user_id = withdrawal.user_id
        await session.rollback()

        if tx_hash and self.verifier is not None:
            verification = await self.verifier.verify(tx_hash, amount_nano, wallet_address)
            if not verification.verified:
                logger.warning(f"Withdrawal {withdrawal_id} on-chain verification failed: {verification.message}")
                raise ConflictError(
                    "On-chain verification failed",
                    code="VERIFICATION_FAILED",
                    details={"reason": verification.message, "tx_hash": tx_hash}
                )

        try:
            await self._compare_and_set(
                session, withdrawal_id, WITHDRAWAL_OPEN_STATUSES, WithdrawalStatus.COMPLETED,
                tx_hash=tx_hash,
                admin_notes=notes,
                processed_by=admin_id,
                processed_at=datetime.now()
            )
            record_audit(
                session, admin_id, "WITHDRAWAL_APPROVED", "withdrawal", withdrawal_id,
                {"tx_hash": tx_hash, "amount_nano": amount_nano}
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(f"Withdrawal {withdrawal_id} completed by admin {admin_id}, tx={tx_hash}")
        text = f"✅ Withdrawal of {format_units(amount_nano, 4)} TON has been sent."
        if tx_hash:
            text += f"\n{explorer_link(tx_hash)}"
        await self._notify_user(session, user_id, text)
        return await self._refreshed(session, withdrawal_id)

    async def reject(self, session: AsyncSession, withdrawal_id, admin_id: int,
                     reason: Optional[str] = None) -> Withdrawal:
        """PENDING/PROCESSING -> REJECTED с возвратом суммы"""
        return await self._refund(
            session, withdrawal_id, admin_id, WithdrawalStatus.REJECTED, "WITHDRAWAL_REJECTED", reason
        )

    async def fail(self, session: AsyncSession, withdrawal_id, admin_id: int,
                   reason: Optional[str] = None) -> Withdrawal:
        """PENDING/PROCESSING -> FAILED с возвратом суммы"""
        return await self._refund(
            session, withdrawal_id, admin_id, WithdrawalStatus.FAILED, "WITHDRAWAL_FAILED", reason
        )

    async def _refund(self, session: AsyncSession, withdrawal_id, admin_id: int,
                      target: WithdrawalStatus, action: str, reason: Optional[str]) -> Withdrawal:
        try:
            await self._compare_and_set(
                session, withdrawal_id, WITHDRAWAL_OPEN_STATUSES, target,
                admin_notes=reason,
                processed_by=admin_id,
                processed_at=datetime.now()
            )

            result = await session.execute(
                select(Withdrawal.user_id, Withdrawal.amount_nano).where(Withdrawal.id == withdrawal_id)
            )
            user_id, amount_nano = result.one()

            await LedgerService.credit(
                session=session,
                user_id=user_id,
                amount=amount_nano,
                transaction_type=TransactionType.ADJUSTMENT,
                reference_id=withdrawal_id,
                reference_type="withdrawal",
                description=f"Refund: withdrawal {target.value.lower()}"
            )

            record_audit(
                session, admin_id, action, "withdrawal", withdrawal_id,
                {"reason": reason, "refunded_nano": amount_nano}
            )
            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error moving withdrawal {withdrawal_id} to {target.value}: {e}")
            raise

        logger.info(
            f"Withdrawal {withdrawal_id} {target.value} by admin {admin_id}, refunded {amount_nano} nano"
        )
        await self._notify_user(
            session, user_id,
            f"❌ Withdrawal of {format_units(amount_nano, 4)} TON was not processed. "
            f"The amount has been returned to your balance."
        )
        return await self._refreshed(session, withdrawal_id)

    @staticmethod
    async def _refreshed(session: AsyncSession, withdrawal_id) -> Withdrawal:
        result = await session.execute(
            select(Withdrawal).where(Withdrawal.id == withdrawal_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _notify_user(self, session: AsyncSession, user_id: int, text: str):
        if not self.notify_func:
            return
        try:
            result = await session.execute(select(User.telegram_id).where(User.id == user_id))
            telegram_id = result.scalar_one_or_none()
            if telegram_id:
                await self.notify_func(telegram_id, text)
        except Exception as e:
            logger.error(f"Error sending notification to user {user_id}: {e}")
