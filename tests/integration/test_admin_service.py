"""
Integration tests for admin actions.
"""

import pytest
from sqlalchemy import select

from shared.config import NANO_PER_UNIT
from shared.database import AuditLog, FraudAlert, FraudAlertStatus, TransactionType, User, UserStatus
from shared.errors import InsufficientBalanceError, InvalidTransitionError, NotFoundError, ValidationError
from arb_api.services.admin_service import AdminService
from arb_api.services.ledger_service import LedgerService


@pytest.fixture
def make_alert(session_factory):
    async def _make(user, status=FraudAlertStatus.OPEN) -> FraudAlert:
        async with session_factory() as s:
            alert = FraudAlert(
                user_id=user.id, alert_type="RISK_HIGH", risk_score=60,
                flags=["VPN_PROXY_DETECTED"], status=status
            )
            s.add(alert)
            await s.commit()
            return alert

    return _make


async def _audit_actions(session_factory):
    async with session_factory() as s:
        result = await s.execute(select(AuditLog.action).order_by(AuditLog.id))
        return list(result.scalars().all())


class TestUserStatus:
    """Test user status transitions."""

    @pytest.mark.asyncio
    async def test_suspend_and_restore(self, session, session_factory, make_user):
        user = await make_user()

        suspended = await AdminService.set_user_status(session, user.id, UserStatus.SUSPENDED, 1, reason="check")
        assert suspended.status == UserStatus.SUSPENDED
        assert suspended.status_reason == "check"

        restored = await AdminService.set_user_status(session, user.id, UserStatus.ACTIVE, 1)
        assert restored.status == UserStatus.ACTIVE
        assert await _audit_actions(session_factory) == ["USER_STATUS_CHANGED", "USER_STATUS_CHANGED"]

    @pytest.mark.asyncio
    async def test_ban_is_final(self, session, make_user):
        user = await make_user(status=UserStatus.BANNED)

        with pytest.raises(InvalidTransitionError):
            await AdminService.set_user_status(session, user.id, UserStatus.ACTIVE, 1)

    @pytest.mark.asyncio
    async def test_same_status_rejected(self, session, make_user):
        user = await make_user()

        with pytest.raises(InvalidTransitionError):
            await AdminService.set_user_status(session, user.id, UserStatus.ACTIVE, 1)

    @pytest.mark.asyncio
    async def test_unknown_user(self, session):
        with pytest.raises(NotFoundError):
            await AdminService.set_user_status(session, 424242, UserStatus.BANNED, 1)


class TestAdjustBalance:
    """Test manual balance adjustments."""

    @pytest.mark.asyncio
    async def test_positive_adjustment(self, session, session_factory, make_user):
        user = await make_user()

        tx = await AdminService.adjust_balance(session, user.id, 3 * NANO_PER_UNIT, 1, "compensation")

        assert tx.transaction_type == TransactionType.ADJUSTMENT
        assert tx.balance_after_nano == 3 * NANO_PER_UNIT
        balance = await LedgerService.get_balance(session, user.id)
        # корректировка не считается заработком
        assert balance["total_earned_nano"] == 0
        assert await _audit_actions(session_factory) == ["BALANCE_ADJUSTED"]

    @pytest.mark.asyncio
    async def test_negative_adjustment(self, session, make_user):
        user = await make_user(balance=5 * NANO_PER_UNIT)

        tx = await AdminService.adjust_balance(session, user.id, -2 * NANO_PER_UNIT, 1, "chargeback")

        assert tx.amount_nano == -2 * NANO_PER_UNIT
        assert tx.balance_after_nano == 3 * NANO_PER_UNIT

    @pytest.mark.asyncio
    async def test_negative_adjustment_cannot_overdraw(self, session, session_factory, make_user):
        user = await make_user(balance=NANO_PER_UNIT)

        with pytest.raises(InsufficientBalanceError):
            await AdminService.adjust_balance(session, user.id, -2 * NANO_PER_UNIT, 1, "chargeback")

        assert await _audit_actions(session_factory) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["", "   ", None])
    async def test_reason_required(self, session, make_user, reason):
        user = await make_user()

        with pytest.raises(ValidationError):
            await AdminService.adjust_balance(session, user.id, NANO_PER_UNIT, 1, reason)

    @pytest.mark.asyncio
    async def test_zero_rejected(self, session, make_user):
        user = await make_user()

        with pytest.raises(ValidationError):
            await AdminService.adjust_balance(session, user.id, 0, 1, "noop")


class TestFraudAlerts:
    """Test alert review workflow."""

    @pytest.mark.asyncio
    async def test_investigate_then_resolve(self, session, make_user, make_alert):
        alert = await make_alert(await make_user())

        investigating = await AdminService.update_fraud_alert(session, alert.id, FraudAlertStatus.INVESTIGATING, 7)
        assert investigating.resolved_by is None

        resolved = await AdminService.update_fraud_alert(
            session, alert.id, FraudAlertStatus.RESOLVED, 7, notes="confirmed"
        )
        assert resolved.status == FraudAlertStatus.RESOLVED
        assert resolved.resolved_by == 7
        assert resolved.resolved_at is not None
        assert resolved.notes == "confirmed"

    @pytest.mark.asyncio
    async def test_closed_alert_is_final(self, session, make_user, make_alert):
        alert = await make_alert(await make_user(), status=FraudAlertStatus.DISMISSED)

        with pytest.raises(InvalidTransitionError):
            await AdminService.update_fraud_alert(session, alert.id, FraudAlertStatus.OPEN, 7)

    @pytest.mark.asyncio
    async def test_list_open_alerts(self, session, make_user, make_alert):
        user = await make_user()
        open_alert = await make_alert(user)
        await make_alert(user, status=FraudAlertStatus.RESOLVED)

        alerts = await AdminService.list_open_alerts(session)

        assert [a.id for a in alerts] == [open_alert.id]

    @pytest.mark.asyncio
    async def test_block_user_from_alert(self, session, session_factory, make_user, make_alert):
        user = await make_user()
        alert = await make_alert(user)

        closed = await AdminService.block_user_from_alert(session, alert.id, 7)

        assert closed.status == FraudAlertStatus.RESOLVED
        assert closed.notes == "User banned"
        async with session_factory() as s:
            assert (await s.get(User, user.id)).status == UserStatus.BANNED
        assert await _audit_actions(session_factory) == ["USER_STATUS_CHANGED", "FRAUD_ALERT_UPDATED"]

    @pytest.mark.asyncio
    async def test_block_already_banned_user(self, session, make_user, make_alert):
        user = await make_user(status=UserStatus.BANNED)
        alert = await make_alert(user)

        closed = await AdminService.block_user_from_alert(session, alert.id, 7, notes="dup account")

        assert closed.status == FraudAlertStatus.RESOLVED
        assert closed.notes == "dup account"
