"""
Админские действия: статус пользователя, корректировка баланса, антифрод-алерты

Все изменения денег идут через LedgerService, чтобы сохранить журнал транзакций.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import User, UserStatus, FraudAlert, FraudAlertStatus, Transaction, TransactionType
from shared.errors import InvalidTransitionError, NotFoundError, ValidationError
from arb_api.services.audit import record_audit
from arb_api.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

# Допустимые переходы статуса пользователя (BANNED окончательный)
USER_TRANSITIONS = {
    UserStatus.ACTIVE: (UserStatus.SUSPENDED, UserStatus.BANNED),
    UserStatus.SUSPENDED: (UserStatus.ACTIVE, UserStatus.BANNED),
    UserStatus.BANNED: (),
}

ALERT_TRANSITIONS = {
    FraudAlertStatus.OPEN: (FraudAlertStatus.INVESTIGATING, FraudAlertStatus.RESOLVED, FraudAlertStatus.DISMISSED),
    FraudAlertStatus.INVESTIGATING: (FraudAlertStatus.RESOLVED, FraudAlertStatus.DISMISSED),
    FraudAlertStatus.RESOLVED: (),
    FraudAlertStatus.DISMISSED: (),
}

ALERT_CLOSED_STATUSES = (FraudAlertStatus.RESOLVED, FraudAlertStatus.DISMISSED)


class AdminService:
    """Сервис админских действий"""

    @staticmethod
    async def set_user_status(
        session: AsyncSession,
        user_id: int,
        status: UserStatus,
        admin_id: int,
        reason: Optional[str] = None,
        commit: bool = True
    ) -> User:
        """
        Сменить статус пользователя (бан/заморозка/разморозка)
        """
        user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", details={"user_id": user_id})

        current = user.status
        if status not in USER_TRANSITIONS[current]:
            raise InvalidTransitionError("user", current.value, status.value)

        result = await session.execute(
            update(User)
            .where(User.id == user_id, User.status == current)
            .values(status=status, status_reason=reason, status_changed_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise InvalidTransitionError("user", "CHANGED", status.value)

        record_audit(
            session, admin_id, "USER_STATUS_CHANGED", "user", user_id,
            {"from": current.value, "to": status.value, "reason": reason}
        )

        if commit:
            try:
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        await session.refresh(user)
        logger.info(f"User {user_id} status {current.value} -> {status.value} by admin {admin_id}")
        return user

    @staticmethod
    async def adjust_balance(
        session: AsyncSession,
        user_id: int,
        amount_nano: int,
        admin_id: int,
        reason: str
    ) -> Transaction:
        """
        Ручная корректировка баланса (положительная или отрицательная)
        """
        if not reason or not reason.strip():
            raise ValidationError("Reason is required for balance adjustment")
        if isinstance(amount_nano, bool) or not isinstance(amount_nano, int) or amount_nano == 0:
            raise ValidationError("Adjustment must be a non-zero integer number of nano-units")

        try:
            if amount_nano > 0:
                transaction = await LedgerService.credit(
                    session, user_id, amount_nano, TransactionType.ADJUSTMENT,
                    reference_type="admin", description=f"Admin adjustment: {reason}"[:255]
                )
            else:
                transaction = await LedgerService.debit(
                    session, user_id, -amount_nano, TransactionType.ADJUSTMENT,
                    reference_type="admin", description=f"Admin adjustment: {reason}"[:255]
                )

            record_audit(
                session, admin_id, "BALANCE_ADJUSTED", "user", user_id,
                {"amount_nano": amount_nano, "reason": reason}
            )
            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Error adjusting balance for user {user_id}: {e}")
            raise

        return transaction

    @staticmethod
    async def update_fraud_alert(
        session: AsyncSession,
        alert_id: int,
        status: FraudAlertStatus,
        admin_id: int,
        notes: Optional[str] = None,
        commit: bool = True
    ) -> FraudAlert:
        """
        Сменить статус алерта: OPEN -> INVESTIGATING -> RESOLVED/DISMISSED
        """
        alert = await session.get(FraudAlert, alert_id)
        if alert is None:
            raise NotFoundError("Fraud alert", details={"alert_id": alert_id})

        current = alert.status
        if status not in ALERT_TRANSITIONS[current]:
            raise InvalidTransitionError("fraud_alert", current.value, status.value)

        values = {"status": status}
        if notes is not None:
            values["notes"] = notes
        if status in ALERT_CLOSED_STATUSES:
            values["resolved_by"] = admin_id
            values["resolved_at"] = datetime.now()

        result = await session.execute(
            update(FraudAlert)
            .where(FraudAlert.id == alert_id, FraudAlert.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise InvalidTransitionError("fraud_alert", "CHANGED", status.value)

        record_audit(
            session, admin_id, "FRAUD_ALERT_UPDATED", "fraud_alert", alert_id,
            {"from": current.value, "to": status.value, "notes": notes}
        )

        if commit:
            try:
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        await session.refresh(alert)
        logger.info(f"Fraud alert {alert_id} {current.value} -> {status.value} by admin {admin_id}")
        return alert

    @staticmethod
    async def block_user_from_alert(
        session: AsyncSession,
        alert_id: int,
        admin_id: int,
        notes: Optional[str] = None
    ) -> FraudAlert:
        """
        Забанить пользователя по алерту и закрыть алерт (одной транзакцией)
        """
        alert = await session.get(FraudAlert, alert_id)
        if alert is None:
            raise NotFoundError("Fraud alert", details={"alert_id": alert_id})

        try:
            user = await session.get(User, alert.user_id)
            if user is not None and user.status != UserStatus.BANNED:
                await AdminService.set_user_status(
                    session, alert.user_id, UserStatus.BANNED, admin_id,
                    reason=f"Fraud alert #{alert_id}", commit=False
                )

            alert = await AdminService.update_fraud_alert(
                session, alert_id, FraudAlertStatus.RESOLVED, admin_id,
                notes=notes or "User banned", commit=False
            )
            await session.commit()

        except Exception:
            await session.rollback()
            raise

        logger.warning(f"User {alert.user_id} banned from fraud alert {alert_id} by admin {admin_id}")
        return alert

    @staticmethod
    async def list_open_alerts(session: AsyncSession, limit: int = 50) -> list[FraudAlert]:
        result = await session.execute(
            select(FraudAlert)
            .where(FraudAlert.status.in_((FraudAlertStatus.OPEN, FraudAlertStatus.INVESTIGATING)))
            .order_by(FraudAlert.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
