"""
Integration tests for risk assessment.

Covers:
- Signal collection from device/IP history and referral graph
- Smoothed stored score and alert creation with dedupe
- Asymmetric fail-safety of the gate
- Earning velocity alerts
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from shared.config import NANO_PER_UNIT
from shared.database import (
    DeviceSession, FraudAlert, FraudAlertStatus, TaskStatus, TransactionType, User
)
from shared.errors import RiskUnavailableError
from arb_api.services.ip_intelligence import IPClassification, IPIntelligence, PrivateRangeIntelligence
from arb_api.services.ledger_service import LedgerService
from arb_api.services.policy import Action, Operation
from arb_api.services.risk_scorer import RiskLevel
from arb_api.services.risk_service import RiskService
from arb_api.services.risk_signals import RequestContext, SignalCollector


class FixedIPIntelligence(IPIntelligence):
    def __init__(self, classification: IPClassification):
        self.classification = classification

    async def classify(self, ip: str) -> IPClassification:
        return self.classification


class BrokenIPIntelligence(IPIntelligence):
    async def classify(self, ip: str) -> IPClassification:
        raise ConnectionError("ip intel down")


async def _add_sessions(session_factory, user, fingerprints=(), ips=(), seen_at=None):
    async with session_factory() as s:
        for fp in fingerprints:
            s.add(DeviceSession(user_id=user.id, fingerprint_hash=fp, seen_at=seen_at or datetime.now()))
        for ip in ips:
            s.add(DeviceSession(user_id=user.id, ip_address=ip, seen_at=seen_at or datetime.now()))
        await s.commit()


class TestSignalCollector:
    """Test signals derived from stored history."""

    @pytest.mark.asyncio
    async def test_clean_user(self, session_factory, make_user):
        user = await make_user()

        async with session_factory() as s:
            signals = await SignalCollector().collect(s, user, RequestContext("fingerprint-0001", "8.8.8.8"))

        assert signals.flags == []
        assert signals.device_count == 1

    @pytest.mark.asyncio
    async def test_device_signals(self, session_factory, make_user):
        user = await make_user()
        await _add_sessions(session_factory, user, fingerprints=["fp-device-01", "fp-device-02", "fp-device-03"])

        async with session_factory() as s:
            signals = await SignalCollector().collect(s, user, RequestContext("fp-device-04", ""))

        assert signals.is_new_device is True
        assert signals.device_count == 4
        assert signals.device_switch_rate == 4
        assert signals.flags == ["NEW_DEVICE", "MULTIPLE_DEVICES", "HIGH_DEVICE_SWITCH_RATE"]

    @pytest.mark.asyncio
    async def test_old_devices_do_not_count_as_switches(self, session_factory, make_user):
        user = await make_user()
        await _add_sessions(
            session_factory, user, fingerprints=["fp-device-01", "fp-device-02", "fp-device-03"],
            seen_at=datetime.now() - timedelta(days=3)
        )

        async with session_factory() as s:
            signals = await SignalCollector().collect(s, user, RequestContext("fp-device-01", ""))

        assert signals.is_new_device is False
        assert signals.device_switch_rate == 1

    @pytest.mark.asyncio
    async def test_ip_signals(self, session_factory, make_user):
        user = await make_user(country="DE")
        await _add_sessions(session_factory, user, ips=[f"10.0.0.{i}" for i in range(5)])
        collector = SignalCollector(FixedIPIntelligence(IPClassification(is_vpn_or_proxy=True, country_code="US")))

        async with session_factory() as s:
            signals = await collector.collect(s, user, RequestContext("", "203.0.113.7"))

        assert signals.is_vpn_or_proxy is True
        assert signals.ip_country_mismatch is True
        assert signals.ip_change_rate == 6
        assert "HIGH_IP_CHANGE_RATE" in signals.flags

    @pytest.mark.asyncio
    async def test_ip_intel_outage_treated_as_clean(self, session_factory, make_user):
        user = await make_user(country="DE")

        async with session_factory() as s:
            signals = await SignalCollector(BrokenIPIntelligence()).collect(s, user, RequestContext("", "1.2.3.4"))

        assert signals.is_vpn_or_proxy is False
        assert signals.ip_country_mismatch is False

    @pytest.mark.asyncio
    async def test_private_ranges_flagged_as_proxy(self):
        intel = PrivateRangeIntelligence()

        assert (await intel.classify("10.1.2.3")).is_vpn_or_proxy is True
        assert (await intel.classify("8.8.8.8")).is_vpn_or_proxy is False
        assert (await intel.classify("garbage")).is_vpn_or_proxy is False

    @pytest.mark.asyncio
    async def test_fast_completion_and_pattern(self, session_factory, make_user, make_offer, make_task):
        user = await make_user()
        offer = await make_offer()
        now = datetime.now()
        for _ in range(31):
            await make_task(
                user, offer, status=TaskStatus.APPROVED,
                started_at=now - timedelta(seconds=2), completed_at=now
            )

        async with session_factory() as s:
            signals = await SignalCollector().collect(s, user, RequestContext())

        # 31 заданий за час: больше 0.5 в минуту
        assert signals.unusually_fast_completion is True
        assert signals.suspicious_pattern is True

    @pytest.mark.asyncio
    async def test_slow_tasks_are_not_a_pattern(self, session_factory, make_user, make_offer, make_task):
        user = await make_user()
        offer = await make_offer()
        now = datetime.now()
        for _ in range(5):
            await make_task(
                user, offer, status=TaskStatus.APPROVED,
                started_at=now - timedelta(minutes=10), completed_at=now
            )

        async with session_factory() as s:
            signals = await SignalCollector().collect(s, user, RequestContext())

        assert signals.unusually_fast_completion is False
        assert signals.suspicious_pattern is False

    @pytest.mark.asyncio
    async def test_self_referral_overlap(self, session_factory, make_user):
        referrer = await make_user()
        user = await make_user(referrer=referrer)
        await _add_sessions(session_factory, referrer, fingerprints=["shared-device-1"])

        async with session_factory() as s:
            signals = await SignalCollector().collect(s, user, RequestContext("shared-device-1", ""))

        assert signals.self_referral_suspect is True

    @pytest.mark.asyncio
    async def test_referral_farming(self, session_factory, make_user):
        start = datetime.now()
        slow = await make_user()
        for minutes in (0, 5, 10):
            await make_user(referrer=slow, created_at=start + timedelta(minutes=minutes))
        fast = await make_user()
        for seconds in (0, 1, 2, 3):
            await make_user(referrer=fast, created_at=start + timedelta(seconds=seconds))
        loner = await make_user()

        async with session_factory() as s:
            collector = SignalCollector()
            slow_signals = await collector.collect(s, slow, RequestContext())
            fast_signals = await collector.collect(s, fast, RequestContext())
            loner_signals = await collector.collect(s, loner, RequestContext())

        assert slow_signals.referral_farming_suspect is False
        assert fast_signals.referral_farming_suspect is True
        assert loner_signals.referral_farming_suspect is False


class TestAssess:
    """Test stored score, observations and alerts."""

    @pytest.mark.asyncio
    async def test_stored_score_is_smoothed(self, session_factory, make_user):
        user = await make_user(risk_score=40)
        service = RiskService(session_factory)

        assessment = await service.assess(user.id, RequestContext())

        assert assessment.fresh_score == 0
        assert assessment.stored_score == 28
        assert assessment.level == RiskLevel.LOW
        async with session_factory() as s:
            assert (await s.get(User, user.id)).risk_score == 28

    @pytest.mark.asyncio
    async def test_observation_recorded(self, session_factory, make_user):
        user = await make_user()
        service = RiskService(session_factory)

        await service.assess(user.id, RequestContext("fingerprint-0001", "8.8.8.8"))

        async with session_factory() as s:
            rows = (await s.execute(select(DeviceSession).where(DeviceSession.user_id == user.id))).scalars().all()
        assert [(r.fingerprint_hash, r.ip_address) for r in rows] == [("fingerprint-0001", "8.8.8.8")]

    @pytest.mark.asyncio
    async def test_unknown_user_is_critical(self, session_factory):
        assessment = await RiskService(session_factory).assess(424242, RequestContext())

        assert assessment.level == RiskLevel.CRITICAL
        assert assessment.flags == ["USER_NOT_FOUND"]

    @pytest.mark.asyncio
    async def test_high_fresh_score_opens_single_alert(self, session_factory, make_user, mock_send, monkeypatch):
        import shared.admin_notifier as admin_notifier

        monkeypatch.setattr(admin_notifier, "ADMIN_IDS", [1])
        referrer = await make_user()
        user = await make_user(referrer=referrer)
        await _add_sessions(session_factory, referrer, fingerprints=["shared-device-1"])
        collector = SignalCollector(FixedIPIntelligence(IPClassification(is_vpn_or_proxy=True)))
        service = RiskService(session_factory, collector, send_func=mock_send)

        # SELF_REFERRAL (40) + VPN (15) = 55 -> HIGH
        first = await service.assess(user.id, RequestContext("shared-device-1", "1.2.3.4"))
        second = await service.assess(user.id, RequestContext("shared-device-1", "1.2.3.4"))

        assert first.fresh_level == RiskLevel.HIGH
        assert second.fresh_level == RiskLevel.HIGH
        async with session_factory() as s:
            alerts = (await s.execute(select(FraudAlert).where(FraudAlert.user_id == user.id))).scalars().all()
        assert len(alerts) == 1
        assert alerts[0].alert_type == "RISK_HIGH"
        assert alerts[0].status == FraudAlertStatus.OPEN
        assert "SELF_REFERRAL_SUSPECT" in alerts[0].flags
        mock_send.assert_awaited_once()


class TestGate:
    """Test fail-open / fail-closed behaviour."""

    @pytest.mark.asyncio
    async def test_general_api_fails_open(self, session_factory):
        service = RiskService(session_factory)
        service.assess = AsyncMock(side_effect=RuntimeError("db down"))

        gate = await service.gate(1, Operation.GENERAL_API, RequestContext())

        assert gate.decision.action == Action.ALLOW
        assert gate.level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_withdrawal_fails_closed(self, session_factory):
        service = RiskService(session_factory)
        service.assess = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RiskUnavailableError):
            await service.gate(1, Operation.WITHDRAWAL, RequestContext())

    @pytest.mark.asyncio
    async def test_critical_stored_score_blocks_task_start(self, session_factory, make_user):
        user = await make_user(risk_score=100)

        gate = await RiskService(session_factory).gate(user.id, Operation.TASK_START, RequestContext())

        # 0.7 * 100 = 70 -> CRITICAL
        assert gate.assessment.stored_score == 70
        assert gate.decision.action == Action.BLOCK


class TestEarningVelocity:
    @pytest.mark.asyncio
    async def test_velocity_alert_once(self, session_factory, make_user):
        user = await make_user()
        service = RiskService(session_factory)

        async with session_factory() as s:
            await LedgerService.credit(s, user.id, 60 * NANO_PER_UNIT, TransactionType.TASK_REWARD)
            await s.commit()

            assert await service.flag_velocity(s, user.id) is True
            assert await service.flag_velocity(s, user.id) is False

            count = (await s.execute(
                select(func.count(FraudAlert.id)).where(FraudAlert.alert_type == "EARNING_VELOCITY")
            )).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_below_threshold(self, session_factory, make_user):
        user = await make_user()

        async with session_factory() as s:
            await LedgerService.credit(s, user.id, NANO_PER_UNIT, TransactionType.TASK_REWARD)
            await s.commit()

            assert await RiskService(session_factory).flag_velocity(s, user.id) is False
