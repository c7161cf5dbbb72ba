"""
Integration tests for ledger primitives.

Covers:
- Balance snapshots on every transaction
- Concurrent credits never lose updates
- Debit fails closed without partial mutation
- Conservation: balance equals the sum of signed transactions
"""

import asyncio

import pytest

from shared.database import TransactionType, User
from shared.errors import InsufficientBalanceError, NotFoundError, ValidationError
from arb_api.services.ledger_service import LedgerService


class TestCreditDebit:
    """Test single credits and debits."""

    @pytest.mark.asyncio
    async def test_credit_records_snapshot(self, session, make_user):
        user = await make_user(balance=100)

        tx = await LedgerService.credit(session, user.id, 50, TransactionType.TASK_REWARD, description="Offer")
        await session.commit()

        assert tx.amount_nano == 50
        assert tx.balance_before_nano == 100
        assert tx.balance_after_nano == 150
        balance = await LedgerService.get_balance(session, user.id)
        assert balance == {"balance_nano": 150, "total_earned_nano": 150}

    @pytest.mark.asyncio
    async def test_adjustment_does_not_count_as_earned(self, session, make_user):
        user = await make_user()

        await LedgerService.credit(session, user.id, 70, TransactionType.ADJUSTMENT)
        await session.commit()

        balance = await LedgerService.get_balance(session, user.id)
        assert balance == {"balance_nano": 70, "total_earned_nano": 0}

    @pytest.mark.asyncio
    async def test_debit_signed_negative(self, session, make_user):
        user = await make_user(balance=100)

        tx = await LedgerService.debit(session, user.id, 40, TransactionType.WITHDRAWAL)
        await session.commit()

        assert tx.amount_nano == -40
        assert tx.balance_before_nano == 100
        assert tx.balance_after_nano == 60

    @pytest.mark.asyncio
    async def test_debit_exact_balance(self, session, make_user):
        user = await make_user(balance=100)

        tx = await LedgerService.debit(session, user.id, 100, TransactionType.WITHDRAWAL)

        assert tx.balance_after_nano == 0

    @pytest.mark.asyncio
    async def test_overdraw_fails_closed(self, session, make_user):
        user = await make_user(balance=100)

        with pytest.raises(InsufficientBalanceError):
            await LedgerService.debit(session, user.id, 101, TransactionType.WITHDRAWAL)
        await session.rollback()

        assert (await LedgerService.get_balance(session, user.id))["balance_nano"] == 100
        assert await LedgerService.get_history(session, user.id) == []

    @pytest.mark.asyncio
    async def test_rejects_non_positive_and_non_integer(self, session, make_user):
        user = await make_user(balance=100)

        for amount in (0, -5, True, "10"):
            with pytest.raises(ValidationError):
                await LedgerService.credit(session, user.id, amount, TransactionType.ADJUSTMENT)

    @pytest.mark.asyncio
    async def test_unknown_user(self, session):
        with pytest.raises(NotFoundError):
            await LedgerService.credit(session, 999_999, 10, TransactionType.ADJUSTMENT)
        with pytest.raises(NotFoundError):
            await LedgerService.debit(session, 999_999, 10, TransactionType.ADJUSTMENT)


class TestConcurrency:
    """Concurrent ledger operations must serialize."""

    @pytest.mark.asyncio
    async def test_concurrent_credits_no_lost_updates(self, session_factory, make_user):
        user = await make_user(balance=1_000)
        n, amount = 20, 7

        async def credit_once():
            async with session_factory() as s:
                await LedgerService.credit(s, user.id, amount, TransactionType.TASK_REWARD)
                await s.commit()

        await asyncio.gather(*(credit_once() for _ in range(n)))

        async with session_factory() as s:
            refreshed = await s.get(User, user.id)
            assert refreshed.balance_nano == 1_000 + n * amount
            history = await LedgerService.get_history(s, user.id, limit=100)
            assert len(history) == n
            # снимки уникальны: каждое начисление видело результат предыдущего
            assert sorted(tx.balance_after_nano for tx in history) == [
                1_000 + amount * i for i in range(1, n + 1)
            ]

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, session_factory, make_user):
        user = await make_user(balance=100)

        async def debit_once():
            async with session_factory() as s:
                try:
                    await LedgerService.debit(s, user.id, 30, TransactionType.WITHDRAWAL)
                    await s.commit()
                    return True
                except InsufficientBalanceError:
                    await s.rollback()
                    return False

        results = await asyncio.gather(*(debit_once() for _ in range(5)))

        assert results.count(True) == 3
        async with session_factory() as s:
            assert (await LedgerService.get_balance(s, user.id))["balance_nano"] == 10

    @pytest.mark.asyncio
    async def test_conservation(self, session_factory, make_user):
        user = await make_user()

        async with session_factory() as s:
            await LedgerService.credit(s, user.id, 500, TransactionType.TASK_REWARD)
            await LedgerService.debit(s, user.id, 120, TransactionType.WITHDRAWAL)
            await LedgerService.credit(s, user.id, 120, TransactionType.ADJUSTMENT)
            await LedgerService.credit(s, user.id, 33, TransactionType.REFERRAL_BONUS)
            await s.commit()

            balance = await LedgerService.get_balance(s, user.id)
            assert balance["balance_nano"] == await LedgerService.sum_transactions(s, user.id)
            assert balance["balance_nano"] == 533
