"""
Политика антифрода: таблица решений (операция, уровень риска) -> действие
"""
import enum
from dataclasses import dataclass
from typing import Iterable, Optional

from shared.errors import FraudBlockedError
from arb_api.services.risk_scorer import RiskLevel


class Operation(str, enum.Enum):
    GENERAL_API = "GENERAL_API"
    TASK_START = "TASK_START"
    WITHDRAWAL = "WITHDRAWAL"


class Action(str, enum.Enum):
    ALLOW = "ALLOW"
    FLAG = "FLAG"  # пропустить, но пометить и снизить лимит
    BLOCK = "BLOCK"


# Адаптивный лимит запросов в минуту
RATE_LIMITS = {
    RiskLevel.LOW: 60,
    RiskLevel.MEDIUM: 30,
    RiskLevel.HIGH: 10,
    RiskLevel.CRITICAL: 5,
}

# Сигналы, при которых вывод уходит на ручную проверку даже на уровне MEDIUM
WITHDRAWAL_BLOCKING_FLAGS = frozenset({
    "SELF_REFERRAL_SUSPECT",
    "REFERRAL_FARMING_SUSPECT",
    "UNUSUALLY_FAST_COMPLETION",
})

FRAUD_MESSAGE = "Your request has been flagged for review. Please contact support."
REVIEW_MESSAGE = "Your account requires review before withdrawals. Please contact support."
MANUAL_REVIEW_MESSAGE = "This withdrawal requires manual review. Please contact support."


@dataclass(frozen=True)
class Decision:
    action: Action
    rate_limit: int
    code: Optional[str] = None
    message: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.action != Action.BLOCK

    def raise_if_blocked(self):
        if not self.allowed:
            raise FraudBlockedError(self.message, code=self.code)


def decide(operation: Operation, level: RiskLevel, flags: Iterable[str] = ()) -> Decision:
    """
    Решение по операции и уровню риска
    """
    rate_limit = RATE_LIMITS[level]

    if operation == Operation.WITHDRAWAL:
        if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            return Decision(Action.BLOCK, rate_limit, "FRAUD_REVIEW_REQUIRED", REVIEW_MESSAGE)
        if WITHDRAWAL_BLOCKING_FLAGS.intersection(flags):
            return Decision(Action.BLOCK, rate_limit, "MANUAL_REVIEW_REQUIRED", MANUAL_REVIEW_MESSAGE)
        return Decision(Action.ALLOW, rate_limit)

    # Старт задания и общий API
    if level == RiskLevel.CRITICAL:
        return Decision(Action.BLOCK, rate_limit, "FRAUD_DETECTED", FRAUD_MESSAGE)
    if level == RiskLevel.HIGH:
        return Decision(Action.FLAG, rate_limit)
    return Decision(Action.ALLOW, rate_limit)
