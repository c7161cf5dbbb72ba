"""
Integration tests for user registration and referral stats.
"""

from datetime import datetime, timedelta

import pytest

from shared.config import NANO_PER_UNIT
from shared.database import Task
from arb_api.services.referral_service import ReferralService


class TestRegisterUser:
    """Test referrer assignment at registration time."""

    @pytest.mark.asyncio
    async def test_new_user_with_referrer(self, session, make_user):
        referrer = await make_user(created_at=datetime.now() - timedelta(days=1))

        user, created = await ReferralService.register_user(
            session, 555001, "newbie", "New", referrer_telegram_id=referrer.telegram_id, country="de"
        )

        assert created is True
        assert user.referrer_id == referrer.id
        assert user.country == "DE"

    @pytest.mark.asyncio
    async def test_existing_user_is_returned(self, session):
        first, created_first = await ReferralService.register_user(session, 555002, "a", "A")
        second, created_second = await ReferralService.register_user(session, 555002, "a", "A")

        assert created_first is True
        assert created_second is False
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_referrer_cannot_be_changed(self, session, make_user):
        referrer = await make_user()
        other = await make_user()
        user, _ = await ReferralService.register_user(
            session, 555003, "b", "B", referrer_telegram_id=referrer.telegram_id
        )

        again, created = await ReferralService.register_user(
            session, 555003, "b", "B", referrer_telegram_id=other.telegram_id
        )

        assert created is False
        assert again.referrer_id == referrer.id

    @pytest.mark.asyncio
    async def test_self_referral_ignored(self, session):
        user, created = await ReferralService.register_user(
            session, 555004, "c", "C", referrer_telegram_id=555004
        )

        assert created is True
        assert user.referrer_id is None

    @pytest.mark.asyncio
    async def test_unknown_referrer_ignored(self, session):
        user, created = await ReferralService.register_user(
            session, 555005, "d", "D", referrer_telegram_id=999999999
        )

        assert created is True
        assert user.referrer_id is None


class TestReferralStats:
    """Test per-tier counts and earnings."""

    @pytest.mark.asyncio
    async def test_stats_by_tier(self, session, session_factory, make_user, make_offer, make_task):
        a = await make_user()
        b1 = await make_user(referrer=a)
        await make_user(referrer=a)
        c = await make_user(referrer=b1)
        await make_user(referrer=c)

        # B1 выполнил задание на 100 TON: A получает 10 TON
        task = await make_task(b1, await make_offer())
        async with session_factory() as s:
            stored = await s.get(Task, task.id)
            await ReferralService.distribute_commissions(s, stored, b1.id, 100 * NANO_PER_UNIT)
            await s.commit()

        stats = await ReferralService.get_referral_stats(session, a.id)

        assert stats["tiers"][1] == {"count": 2, "earned_nano": 10 * NANO_PER_UNIT}
        assert stats["tiers"][2] == {"count": 1, "earned_nano": 0}
        assert stats["tiers"][3] == {"count": 1, "earned_nano": 0}
        assert stats["total_referrals"] == 4
        assert stats["total_earned_nano"] == 10 * NANO_PER_UNIT

    @pytest.mark.asyncio
    async def test_no_referrals(self, session, make_user):
        user = await make_user()

        stats = await ReferralService.get_referral_stats(session, user.id)

        assert stats["total_referrals"] == 0
        assert stats["tiers"][3] == {"count": 0, "earned_nano": 0}
