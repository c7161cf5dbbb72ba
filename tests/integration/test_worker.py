"""
Integration tests for worker jobs: offer sync, fraud analysis, task watchdog, shutdown.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from shared.config import NANO_PER_UNIT
from shared.database import FraudAlert, Offer, Task, TaskStatus, TransactionType
from arb_api.cpa.base import NormalizedOffer
from arb_api.cpa.registry import ProviderRegistry, sync_offers
from arb_api.services.ledger_service import LedgerService
from arb_api.services.risk_service import RiskService
from worker import main as worker_main
from worker.tasks import process_fraud_analysis, run_offer_sync
from worker.watchdog import TaskWatchdog


def _offer(external_id="100", network_cents=200, user_cents=90, **kwargs) -> NormalizedOffer:
    return NormalizedOffer(
        external_id=external_id,
        network="CPAGRIP",
        name=kwargs.pop("name", "Install App"),
        network_payout_cents=network_cents,
        user_payout_cents=user_cents,
        **kwargs
    )


def _registry(offers) -> ProviderRegistry:
    registry = ProviderRegistry(margin_percent=55, usd_rate="2")
    registry.fetch_all_offers = AsyncMock(return_value=offers)
    return registry


async def _offers(session_factory):
    async with session_factory() as s:
        result = await s.execute(select(Offer).order_by(Offer.external_id))
        return list(result.scalars().all())


class TestOfferSync:
    """Test offer upsert from CPA networks."""

    @pytest.mark.asyncio
    async def test_creates_offers(self, session_factory):
        stats = await sync_offers(session_factory, _registry([_offer("100"), _offer("101", countries=["US"])]))

        offers = await _offers(session_factory)
        assert stats == {"created": 2, "updated": 0, "skipped": 0, "errors": 0}
        assert [o.external_id for o in offers] == ["100", "101"]
        # 0.90 USD при курсе 2 USD за TON
        assert offers[0].user_payout_nano == 450_000_000
        assert offers[1].countries == ["US"]

    @pytest.mark.asyncio
    async def test_updates_existing(self, session_factory):
        await sync_offers(session_factory, _registry([_offer("100")]))

        stats = await sync_offers(session_factory, _registry([_offer("100", network_cents=400, user_cents=180,
                                                                         name="Renamed")]))

        offers = await _offers(session_factory)
        assert stats["updated"] == 1
        assert len(offers) == 1
        assert offers[0].name == "Renamed"
        assert offers[0].user_payout_nano == 900_000_000

    @pytest.mark.asyncio
    async def test_skips_unprofitable(self, session_factory):
        stats = await sync_offers(session_factory, _registry([
            _offer("100", network_cents=100, user_cents=100),
            _offer("101", network_cents=1, user_cents=0),
        ]))

        assert stats["skipped"] == 2
        assert await _offers(session_factory) == []

    @pytest.mark.asyncio
    async def test_run_offer_sync_survives_errors(self, session_factory):
        registry = ProviderRegistry()
        registry.fetch_all_offers = AsyncMock(side_effect=RuntimeError("network down"))

        assert await run_offer_sync(session_factory, registry) is None


class TestFraudAnalysisJob:
    """Test earning velocity job."""

    @pytest.mark.asyncio
    async def test_opens_velocity_alert(self, session_factory, make_user):
        user = await make_user()
        async with session_factory() as s:
            await LedgerService.credit(s, user.id, 51 * NANO_PER_UNIT, TransactionType.REFERRAL_BONUS)
            await s.commit()

        opened = await process_fraud_analysis(
            {"user_id": user.id, "task_id": "t-1"}, session_factory, RiskService(session_factory)
        )

        assert opened is True
        async with session_factory() as s:
            alert = (await s.execute(select(FraudAlert))).scalar_one()
        assert alert.alert_type == "EARNING_VELOCITY"
        assert alert.user_id == user.id

    @pytest.mark.asyncio
    async def test_malformed_job(self, session_factory):
        risk_service = RiskService(session_factory)
        risk_service.flag_velocity = AsyncMock()

        assert await process_fraud_analysis({"user_id": "7"}, session_factory, risk_service) is False
        risk_service.flag_velocity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_errors_are_contained(self, session_factory):
        risk_service = RiskService(session_factory)
        risk_service.flag_velocity = AsyncMock(side_effect=RuntimeError("db down"))

        assert await process_fraud_analysis({"user_id": 7}, session_factory, risk_service) is False


class TestTaskWatchdog:
    """Test expiry pass of the watchdog."""

    @pytest.mark.asyncio
    async def test_check_stale_tasks(self, session_factory, make_user, make_offer, make_task):
        user = await make_user()
        stale = await make_task(user, await make_offer(), started_at=datetime.now() - timedelta(hours=30))
        await make_task(user, await make_offer())

        watchdog = TaskWatchdog(session_factory, expiry=timedelta(hours=24))

        assert await watchdog.check_stale_tasks() == 1
        assert await watchdog.check_stale_tasks() == 0
        async with session_factory() as s:
            assert (await s.get(Task, stale.id)).status == TaskStatus.REJECTED

    @pytest.mark.asyncio
    async def test_stop(self, session_factory):
        watchdog = TaskWatchdog(session_factory)
        watchdog.running = True

        watchdog.stop()

        assert watchdog.running is False


class TestWorkerShutdown:
    """Test the main worker loop lifecycle."""

    @pytest.fixture
    def worker(self, session_factory, monkeypatch):
        monkeypatch.setattr(worker_main, "init_db", AsyncMock())
        monkeypatch.setattr(worker_main, "setup_bot", AsyncMock(return_value=None))

        dequeued = asyncio.Event()

        async def dequeue(timeout=5):
            dequeued.set()
            await asyncio.Event().wait()

        queue = AsyncMock()
        queue.dequeue = dequeue

        worker = worker_main.Worker(session_factory=session_factory, queue=queue)
        worker.watchdog.start = AsyncMock()
        worker.sync_loop = AsyncMock()
        worker.cleanup = AsyncMock()
        worker.dequeued = dequeued
        return worker

    @pytest.mark.asyncio
    async def test_cancel_cleans_up_and_propagates(self, worker):
        task = asyncio.create_task(worker.start())
        await asyncio.wait_for(worker.dequeued.wait(), timeout=2)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert task.cancelled()
        assert worker.running is False
        worker.cleanup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_job_errors_do_not_stop_loop(self, worker):
        calls = []

        async def dequeue(timeout=5):
            calls.append(timeout)
            if len(calls) == 1:
                raise RuntimeError("redis down")
            worker.stop()
            return None

        worker.queue.dequeue = dequeue

        await worker.start()

        assert len(calls) == 2
        worker.cleanup.assert_awaited_once()
