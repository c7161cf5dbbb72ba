"""
Сборщик антифрод-сигналов

Сигналы каждый раз считаются заново из таблиц истории,
кэшированным значениям не доверяем.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import User, Task, TaskStatus, DeviceSession
from arb_api.services.ip_intelligence import IPIntelligence, IPClassification
from arb_api.services.risk_scorer import SignalSet

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=24)
COMPLETION_WINDOW_MINUTES = 60
FAST_COMPLETION_RATE = 0.5  # заданий в минуту: быстрее одного задания раз в две минуты
PATTERN_SAMPLE_SIZE = 20
PATTERN_MIN_SAMPLE = 5
FAST_TASK_SECONDS = 5
FARMING_MIN_REFERRALS = 3
FARMING_SAMPLE_SIZE = 20
FARMING_MAX_AVG_GAP_SECONDS = 60

COMPLETED_STATUSES = (TaskStatus.PENDING, TaskStatus.APPROVED)


@dataclass
class RequestContext:
    """Контекст запроса: отпечаток устройства и IP"""
    fingerprint: str = ""
    ip_address: str = ""


class SignalCollector:
    """Сборщик сигналов по истории пользователя"""

    def __init__(self, ip_intel: Optional[IPIntelligence] = None, now_func: Callable[[], datetime] = datetime.now):
        self.ip_intel = ip_intel or IPIntelligence()
        self.now = now_func

    async def collect(self, session: AsyncSession, user: User, context: RequestContext) -> SignalSet:
        """
        Собрать сигналы для пользователя и текущего запроса
        """
        now = self.now()
        signals = SignalSet()

        # Устройства
        known_devices = await self._fingerprints(session, user.id)
        current_fp = context.fingerprint
        if current_fp:
            signals.is_new_device = current_fp not in known_devices
        signals.device_count = len(known_devices) + (1 if signals.is_new_device else 0)

        recent_devices = await self._fingerprints(session, user.id, since=now - RECENT_WINDOW)
        if current_fp:
            recent_devices.add(current_fp)
        signals.device_switch_rate = len(recent_devices)

        # IP
        classification = await self._classify_ip(context.ip_address)
        signals.is_vpn_or_proxy = classification.is_vpn_or_proxy
        if user.country and classification.country_code:
            signals.ip_country_mismatch = user.country.upper() != classification.country_code

        recent_ips = await self._ips(session, user.id, since=now - RECENT_WINDOW)
        if context.ip_address:
            recent_ips.add(context.ip_address)
        signals.ip_change_rate = len(recent_ips)

        # Поведение
        since = now - timedelta(minutes=COMPLETION_WINDOW_MINUTES)
        result = await session.execute(
            select(func.count(Task.id)).where(
                Task.user_id == user.id,
                Task.status.in_(COMPLETED_STATUSES),
                Task.completed_at >= since
            )
        )
        completed_recently = result.scalar() or 0
        signals.task_completion_rate = completed_recently / COMPLETION_WINDOW_MINUTES
        signals.unusually_fast_completion = signals.task_completion_rate > FAST_COMPLETION_RATE

        signals.suspicious_pattern = await self._detect_fast_pattern(session, user.id)

        # Рефералы
        if user.referrer_id:
            signals.self_referral_suspect = await self._overlaps_referrer(
                session, user, current_fp, context.ip_address
            )
        signals.referral_farming_suspect = await self._detect_referral_farming(session, user.id)

        return signals

    async def _classify_ip(self, ip: str) -> IPClassification:
        if not ip:
            return IPClassification()
        try:
            return await self.ip_intel.classify(ip)
        except Exception as e:
            # Недоступность IP intel не должна влиять на решение
            logger.warning(f"IP intelligence unavailable for {ip}: {e}")
            return IPClassification()

    @staticmethod
    async def _fingerprints(session: AsyncSession, user_id: int, since: Optional[datetime] = None) -> Set[str]:
        query = select(DeviceSession.fingerprint_hash).where(
            DeviceSession.user_id == user_id,
            DeviceSession.fingerprint_hash.is_not(None),
            DeviceSession.fingerprint_hash != ""
        )
        if since is not None:
            query = query.where(DeviceSession.seen_at >= since)
        result = await session.execute(query.distinct())
        return set(result.scalars().all())

    @staticmethod
    async def _ips(session: AsyncSession, user_id: int, since: Optional[datetime] = None) -> Set[str]:
        query = select(DeviceSession.ip_address).where(
            DeviceSession.user_id == user_id,
            DeviceSession.ip_address.is_not(None),
            DeviceSession.ip_address != ""
        )
        if since is not None:
            query = query.where(DeviceSession.seen_at >= since)
        result = await session.execute(query.distinct())
        return set(result.scalars().all())

    @staticmethod
    async def _detect_fast_pattern(session: AsyncSession, user_id: int) -> bool:
        """
        Больше половины из последних 20 завершённых заданий выполнены быстрее 5 секунд
        """
        result = await session.execute(
            select(Task.started_at, Task.completed_at)
            .where(
                Task.user_id == user_id,
                Task.status.in_(COMPLETED_STATUSES),
                Task.completed_at.is_not(None)
            )
            .order_by(Task.completed_at.desc())
            .limit(PATTERN_SAMPLE_SIZE)
        )
        rows = result.all()

        if len(rows) < PATTERN_MIN_SAMPLE:
            return False

        fast = sum(
            1 for started_at, completed_at in rows
            if started_at and (completed_at - started_at).total_seconds() < FAST_TASK_SECONDS
        )
        return fast * 2 > len(rows)

    async def _overlaps_referrer(self, session: AsyncSession, user: User, current_fp: str, current_ip: str) -> bool:
        """
        Устройства или IP пользователя пересекаются с устройствами/IP его реферера
        """
        user_devices = await self._fingerprints(session, user.id)
        user_ips = await self._ips(session, user.id)
        if current_fp:
            user_devices.add(current_fp)
        if current_ip:
            user_ips.add(current_ip)

        referrer_devices = await self._fingerprints(session, user.referrer_id)
        referrer_ips = await self._ips(session, user.referrer_id)

        return bool(user_devices & referrer_devices) or bool(user_ips & referrer_ips)

    @staticmethod
    async def _detect_referral_farming(session: AsyncSession, user_id: int) -> bool:
        """
        3+ реферала, средний интервал между регистрациями меньше минуты
        """
        result = await session.execute(
            select(User.created_at)
            .where(User.referrer_id == user_id)
            .order_by(User.created_at.desc())
            .limit(FARMING_SAMPLE_SIZE)
        )
        join_times = list(result.scalars().all())

        if len(join_times) < FARMING_MIN_REFERRALS:
            return False

        span = (join_times[0] - join_times[-1]).total_seconds()
        avg_gap = span / (len(join_times) - 1)
        return avg_gap < FARMING_MAX_AVG_GAP_SECONDS
