"""
Скоринг риска: детерминированная взвешенная сумма сигналов

Чистые функции, без обращения к БД.
"""
import enum
from dataclasses import dataclass, field
from typing import List


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Нижние границы уровней: LOW [0,30), MEDIUM [30,50), HIGH [50,70), CRITICAL [70,100]
RISK_THRESHOLDS = {
    RiskLevel.MEDIUM: 30,
    RiskLevel.HIGH: 50,
    RiskLevel.CRITICAL: 70,
}

FRAUD_WEIGHTS = {
    "NEW_DEVICE": 5,
    "MULTIPLE_DEVICES": 10,
    "HIGH_DEVICE_SWITCH_RATE": 20,
    "VPN_PROXY_DETECTED": 15,
    "IP_COUNTRY_MISMATCH": 10,
    "HIGH_IP_CHANGE_RATE": 15,
    "UNUSUALLY_FAST_COMPLETION": 25,
    "SUSPICIOUS_PATTERN": 30,
    "SELF_REFERRAL_SUSPECT": 40,
    "REFERRAL_FARMING_SUSPECT": 35,
}

MAX_SCORE = 100

# Пороговые значения числовых сигналов
MAX_DEVICES = 3
MAX_DEVICE_SWITCHES_24H = 3
MAX_IP_CHANGES_24H = 5


@dataclass
class SignalSet:
    """Сигналы одного наблюдения"""
    is_new_device: bool = False
    device_count: int = 0
    device_switch_rate: int = 0
    is_vpn_or_proxy: bool = False
    ip_country_mismatch: bool = False
    ip_change_rate: int = 0
    task_completion_rate: float = 0.0
    unusually_fast_completion: bool = False
    suspicious_pattern: bool = False
    self_referral_suspect: bool = False
    referral_farming_suspect: bool = False
    extra_flags: List[str] = field(default_factory=list)

    @property
    def flags(self) -> List[str]:
        """Имена сработавших сигналов, в порядке таблицы весов"""
        triggered = {
            "NEW_DEVICE": self.is_new_device and self.device_count > 1,
            "MULTIPLE_DEVICES": self.device_count > MAX_DEVICES,
            "HIGH_DEVICE_SWITCH_RATE": self.device_switch_rate > MAX_DEVICE_SWITCHES_24H,
            "VPN_PROXY_DETECTED": self.is_vpn_or_proxy,
            "IP_COUNTRY_MISMATCH": self.ip_country_mismatch,
            "HIGH_IP_CHANGE_RATE": self.ip_change_rate > MAX_IP_CHANGES_24H,
            "UNUSUALLY_FAST_COMPLETION": self.unusually_fast_completion,
            "SUSPICIOUS_PATTERN": self.suspicious_pattern,
            "SELF_REFERRAL_SUSPECT": self.self_referral_suspect,
            "REFERRAL_FARMING_SUSPECT": self.referral_farming_suspect,
        }
        return [name for name in FRAUD_WEIGHTS if triggered[name]] + list(self.extra_flags)


def calculate_score(signals: SignalSet) -> int:
    """
    Score = min(100, сумма весов сработавших сигналов)
    """
    score = sum(FRAUD_WEIGHTS.get(flag, 0) for flag in signals.flags)
    return max(0, min(MAX_SCORE, score))


def risk_level(score: int) -> RiskLevel:
    """Уровень риска по score"""
    if score >= RISK_THRESHOLDS[RiskLevel.CRITICAL]:
        return RiskLevel.CRITICAL
    if score >= RISK_THRESHOLDS[RiskLevel.HIGH]:
        return RiskLevel.HIGH
    if score >= RISK_THRESHOLDS[RiskLevel.MEDIUM]:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def smooth_score(stored: int, fresh: int) -> int:
    """
    Экспоненциальное сглаживание: round(0.7 * stored + 0.3 * fresh)

    Целочисленно, округление половины вверх. Результат всегда
    лежит в [min(stored, fresh), max(stored, fresh)].
    """
    return (7 * stored + 3 * fresh + 5) // 10
