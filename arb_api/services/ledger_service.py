"""
Сервис журнала: атомарные начисления и списания

Каждое изменение баланса выполняется одним UPDATE с выражением
balance = balance ± amount и сопровождается неизменяемой записью Transaction
со снимком итогового баланса. Коммит делает вызывающий код, чтобы
начисление входило в его атомарную единицу.
"""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import User, Transaction, TransactionType, EARNING_TYPES
from shared.errors import InsufficientBalanceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class LedgerService:
    """Примитивы журнала"""

    @staticmethod
    def _check_amount(amount: int):
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Ledger amounts must be integers (nano-units)")
        if amount <= 0:
            raise ValidationError("Ledger amounts must be positive")

    @staticmethod
    async def _current_balance(session: AsyncSession, user_id: int) -> int:
        result = await session.execute(
            select(User.balance_nano).where(User.id == user_id)
        )
        return result.scalar_one()

    @staticmethod
    async def credit(
        session: AsyncSession,
        user_id: int,
        amount: int,
        transaction_type: TransactionType,
        reference_id: Optional[UUID] = None,
        reference_type: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Начислить amount nano пользователю

        Returns:
            Transaction со снимком баланса после начисления
        """
        LedgerService._check_amount(amount)

        values = {"balance_nano": User.balance_nano + amount}
        if transaction_type in EARNING_TYPES:
            values["total_earned_nano"] = User.total_earned_nano + amount

        result = await session.execute(
            update(User)
            .where(User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError("User", details={"user_id": user_id})

        balance_after = await LedgerService._current_balance(session, user_id)

        transaction = Transaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount_nano=amount,
            balance_before_nano=balance_after - amount,
            balance_after_nano=balance_after,
            reference_id=reference_id,
            reference_type=reference_type,
            description=description
        )
        session.add(transaction)
        await session.flush()

        logger.info(
            f"Credited {amount} nano to user {user_id} ({transaction_type.value}). "
            f"Balance: {balance_after}"
        )

        return transaction

    @staticmethod
    async def debit(
        session: AsyncSession,
        user_id: int,
        amount: int,
        transaction_type: TransactionType,
        reference_id: Optional[UUID] = None,
        reference_type: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Списать amount nano у пользователя

        Условный UPDATE (balance >= amount): частичных списаний не бывает.

        Raises:
            InsufficientBalanceError: баланса не хватает, ничего не изменено
        """
        LedgerService._check_amount(amount)

        result = await session.execute(
            update(User)
            .where(User.id == user_id, User.balance_nano >= amount)
            .values(balance_nano=User.balance_nano - amount)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            exists = await session.execute(select(User.id).where(User.id == user_id))
            if exists.scalar_one_or_none() is None:
                raise NotFoundError("User", details={"user_id": user_id})
            logger.warning(f"Insufficient balance for user {user_id}: required={amount}")
            raise InsufficientBalanceError()

        balance_after = await LedgerService._current_balance(session, user_id)

        transaction = Transaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount_nano=-amount,
            balance_before_nano=balance_after + amount,
            balance_after_nano=balance_after,
            reference_id=reference_id,
            reference_type=reference_type,
            description=description
        )
        session.add(transaction)
        await session.flush()

        logger.info(
            f"Debited {amount} nano from user {user_id} ({transaction_type.value}). "
            f"Balance: {balance_after}"
        )

        return transaction

    @staticmethod
    async def get_balance(session: AsyncSession, user_id: int) -> dict:
        """
        Получить информацию о балансе
        """
        result = await session.execute(
            select(User.balance_nano, User.total_earned_nano).where(User.id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundError("User")
        return {
            "balance_nano": row.balance_nano,
            "total_earned_nano": row.total_earned_nano,
        }

    @staticmethod
    async def get_history(session: AsyncSession, user_id: int, limit: int = 50) -> list[Transaction]:
        """
        Последние транзакции пользователя в порядке создания (новые первыми)
        """
        result = await session.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def sum_transactions(session: AsyncSession, user_id: int) -> int:
        """Сумма знаковых сумм всех транзакций пользователя"""
        result = await session.execute(
            select(func.coalesce(func.sum(Transaction.amount_nano), 0))
            .where(Transaction.user_id == user_id)
        )
        return int(result.scalar_one())
