"""
Сервис оценки риска и гейты перед чувствительными операциями
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import EARNING_VELOCITY_THRESHOLD_NANO
from shared.database import (
    User, DeviceSession, FraudAlert, FraudAlertStatus, Transaction, TransactionType
)
from shared.errors import RiskUnavailableError
from shared.admin_notifier import notify_fraud_alert
from arb_api.services.policy import Decision, Operation, decide
from arb_api.services.risk_scorer import (
    RiskLevel, SignalSet, MAX_SCORE, calculate_score, risk_level
)
from arb_api.services.risk_signals import RequestContext, SignalCollector

logger = logging.getLogger(__name__)

ALERT_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)
OPEN_ALERT_STATUSES = (FraudAlertStatus.OPEN, FraudAlertStatus.INVESTIGATING)
VELOCITY_WINDOW = timedelta(hours=1)


@dataclass
class RiskAssessment:
    """Результат оценки: свежий score и сглаженный сохранённый"""
    user_id: int
    fresh_score: int
    stored_score: int
    signals: SignalSet
    flags: List[str] = field(default_factory=list)

    @property
    def fresh_level(self) -> RiskLevel:
        return risk_level(self.fresh_score)

    @property
    def level(self) -> RiskLevel:
        """Уровень для политики: по сглаженному score"""
        return risk_level(self.stored_score)


@dataclass
class GateResult:
    decision: Decision
    assessment: Optional[RiskAssessment] = None

    @property
    def level(self) -> RiskLevel:
        return self.assessment.level if self.assessment else RiskLevel.LOW


class RiskService:
    """Оценка риска пользователя"""

    def __init__(self, session_factory, collector: Optional[SignalCollector] = None, send_func=None):
        self.session_factory = session_factory
        self.collector = collector or SignalCollector()
        self.send_func = send_func

    async def assess(self, user_id: int, context: RequestContext) -> RiskAssessment:
        """
        Собрать сигналы, посчитать score, обновить сохранённый score,
        записать наблюдение устройства и при необходимости создать алерт
        """
        new_alert: Optional[FraudAlert] = None

        async with self.session_factory() as session:
            try:
                user = await session.get(User, user_id)
                if user is None:
                    logger.warning(f"Risk assessment for unknown user {user_id}")
                    signals = SignalSet(extra_flags=["USER_NOT_FOUND"])
                    return RiskAssessment(user_id, MAX_SCORE, MAX_SCORE, signals, signals.flags)

                signals = await self.collector.collect(session, user, context)
                fresh_score = calculate_score(signals)
                flags = signals.flags

                # round(0.7 * stored + 0.3 * fresh) одним UPDATE
                await session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(risk_score=(User.risk_score * 7 + fresh_score * 3 + 5) // 10)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(select(User.risk_score).where(User.id == user_id))
                stored_score = result.scalar_one()

                if context.fingerprint or context.ip_address:
                    session.add(DeviceSession(
                        user_id=user_id,
                        fingerprint_hash=context.fingerprint or None,
                        ip_address=context.ip_address or None
                    ))

                if risk_level(fresh_score) in ALERT_LEVELS:
                    logger.warning(
                        f"High fraud risk detected for user {user_id}: "
                        f"score={fresh_score}, flags={flags}"
                    )
                    new_alert = await self._open_alert(
                        session, user_id, f"RISK_{risk_level(fresh_score).value}", fresh_score, flags
                    )

                await session.commit()

            except Exception:
                await session.rollback()
                raise

        if new_alert is not None:
            await self._notify(new_alert)

        logger.debug(
            f"Risk assessed for user {user_id}: fresh={fresh_score}, stored={stored_score}"
        )
        return RiskAssessment(user_id, fresh_score, stored_score, signals, flags)

    async def gate(self, user_id: int, operation: Operation, context: RequestContext) -> GateResult:
        """
        Проверка перед операцией

        Ошибка оценки: общий API пропускается (fail open),
        вывод блокируется до восстановления (fail closed).
        """
        try:
            assessment = await self.assess(user_id, context)
        except Exception as e:
            if operation == Operation.WITHDRAWAL:
                logger.error(f"Risk assessment failed for withdrawal of user {user_id}: {e}", exc_info=True)
                raise RiskUnavailableError()
            logger.error(f"Risk assessment failed for user {user_id}, failing open: {e}", exc_info=True)
            return GateResult(decide(operation, RiskLevel.LOW))

        decision = decide(operation, assessment.level, assessment.flags)

        if not decision.allowed:
            logger.warning(
                f"{operation.value} blocked for user {user_id}: "
                f"code={decision.code}, stored={assessment.stored_score}, flags={assessment.flags}"
            )

        return GateResult(decision, assessment)

    async def flag_velocity(self, session: AsyncSession, user_id: int, now: Optional[datetime] = None) -> bool:
        """
        Проверка скорости заработка (только алерт, деньги не блокирует)

        Returns:
            True если создан новый алерт
        """
        now = now or datetime.now()
        result = await session.execute(
            select(func.coalesce(func.sum(Transaction.amount_nano), 0)).where(
                Transaction.user_id == user_id,
                Transaction.transaction_type.in_([TransactionType.TASK_REWARD, TransactionType.REFERRAL_BONUS]),
                Transaction.created_at >= now - VELOCITY_WINDOW
            )
        )
        earned = int(result.scalar_one())

        if earned <= EARNING_VELOCITY_THRESHOLD_NANO:
            return False

        logger.warning(f"Suspicious earning velocity for user {user_id}: earned={earned} nano in 1h")

        user = await session.get(User, user_id)
        alert = await self._open_alert(
            session, user_id, "EARNING_VELOCITY", user.risk_score if user else 0, ["EARNING_VELOCITY"]
        )
        await session.commit()

        if alert is None:
            return False
        await self._notify(alert)
        return True

    @staticmethod
    async def _open_alert(session: AsyncSession, user_id: int, alert_type: str,
                          score: int, flags: List[str]) -> Optional[FraudAlert]:
        """Создать алерт, если по этому пользователю нет открытого того же типа"""
        result = await session.execute(
            select(FraudAlert.id).where(
                FraudAlert.user_id == user_id,
                FraudAlert.alert_type == alert_type,
                FraudAlert.status.in_(OPEN_ALERT_STATUSES)
            ).limit(1)
        )
        if result.scalar_one_or_none() is not None:
            return None

        alert = FraudAlert(
            user_id=user_id,
            alert_type=alert_type,
            risk_score=score,
            flags=list(flags),
            status=FraudAlertStatus.OPEN
        )
        session.add(alert)
        await session.flush()
        logger.warning(f"Fraud alert {alert.id} created for user {user_id}: {alert_type}")
        return alert

    async def _notify(self, alert: FraudAlert):
        try:
            await notify_fraud_alert(
                alert.user_id, alert.alert_type, alert.risk_score, alert.flags or [],
                send_func=self.send_func
            )
        except Exception as e:
            logger.error(f"Error sending fraud alert notification: {e}")
