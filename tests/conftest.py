"""Pytest configuration and shared fixtures for all tests."""

import os
import sys
import tempfile
from pathlib import Path

# Минимальные переменные окружения: до импорта shared.config
_test_data_dir = tempfile.mkdtemp(prefix="traffic_arb_tests_")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATA_DIR", _test_data_dir)
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_test_data_dir}/unused.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")
os.environ.setdefault("ALLOW_UNSIGNED_POSTBACKS", "false")
os.environ.setdefault("ADMIN_IDS", "")

# Добавить корень проекта в PYTHONPATH
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import itertools
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from shared.config import NANO_PER_UNIT
from shared.database import (
    make_engine, make_session_factory, init_db,
    User, UserStatus, Offer, Task, TaskStatus
)
from arb_api.cpa.base import ProviderConfig
from arb_api.cpa.providers.adgate import AdGateProvider
from arb_api.cpa.providers.cpagrip import CPAGripProvider
from arb_api.cpa.providers.ogads import OGAdsProvider
from arb_api.cpa.registry import ProviderRegistry
from arb_api.services.task_service import active_key

POSTBACK_SECRET = "test-postback-secret"

_ids = itertools.count(1000)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Отдельная SQLite база на каждый тест."""
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory):
    """Фабрика пользователей (пишет в БД отдельной сессией)."""
    async def _make(
        referrer=None,
        balance=0,
        risk_score=0,
        created_at=None,
        country=None,
        is_premium=False,
        status=UserStatus.ACTIVE
    ) -> User:
        async with session_factory() as s:
            telegram_id = next(_ids)
            user = User(
                telegram_id=telegram_id,
                username=f"user{telegram_id}",
                first_name="Test",
                country=country,
                is_premium=is_premium,
                created_at=created_at or datetime.now(),
                balance_nano=balance,
                total_earned_nano=balance,
                risk_score=risk_score,
                status=status,
                referrer_id=referrer.id if referrer is not None else None
            )
            s.add(user)
            await s.commit()
            return user

    return _make


@pytest.fixture
def make_offer(session_factory):
    """Фабрика офферов."""
    async def _make(
        network="CPAGRIP",
        payout_nano=10 * NANO_PER_UNIT,
        countries=None,
        devices=None,
        min_account_age_days=0,
        premium_required=False,
        is_active=True
    ) -> Offer:
        async with session_factory() as s:
            offer = Offer(
                external_id=str(next(_ids)),
                network=network,
                name="Install Test App",
                network_payout_cents=200,
                user_payout_cents=90,
                user_payout_nano=payout_nano,
                countries=countries or [],
                devices=devices or [],
                min_account_age_days=min_account_age_days,
                premium_required=premium_required,
                tracking_url="https://example.com/offer",
                is_active=is_active
            )
            s.add(offer)
            await s.commit()
            return offer

    return _make


@pytest.fixture
def make_task(session_factory):
    """Фабрика заданий в заданном статусе."""
    async def _make(user: User, offer: Offer, status=TaskStatus.STARTED, payout_nano=None,
                    started_at=None, session_token=None, completed_at=None) -> Task:
        async with session_factory() as s:
            is_open = status in (TaskStatus.STARTED, TaskStatus.PENDING)
            task = Task(
                user_id=user.id,
                offer_id=offer.id,
                session_token=session_token or f"token-{next(_ids)}",
                status=status,
                payout_nano=offer.user_payout_nano if payout_nano is None else payout_nano,
                active_key=active_key(user.id, offer.id) if is_open else None,
                started_at=started_at or datetime.now(),
                completed_at=completed_at
            )
            s.add(task)
            await s.commit()
            return task

    return _make


@pytest.fixture
def registry():
    """Реестр трёх сетей с секретом постбэков."""
    registry = ProviderRegistry(margin_percent=55, usd_rate="2")
    registry.register(CPAGripProvider(
        ProviderConfig("CPAGRIP", "key", "pub-1", postback_secret=POSTBACK_SECRET)
    ))
    registry.register(OGAdsProvider(
        ProviderConfig("OGADS", "key", "pub-2", postback_secret=POSTBACK_SECRET)
    ))
    registry.register(AdGateProvider(
        ProviderConfig("ADGATE", "key", "wall-3", postback_secret=POSTBACK_SECRET)
    ))
    return registry


@pytest.fixture
def mock_send():
    """Mock отправки сообщений в Telegram."""
    return AsyncMock()


@pytest.fixture
def postback_secret():
    return POSTBACK_SECRET


@pytest.fixture
def ton_address():
    """Валидный user-friendly адрес TON (48 символов base64url)."""
    return "EQD" + "a1B2c3" * 7 + "xyz"


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": os.environ["ADMIN_API_TOKEN"], "X-Admin-Id": "1"}
