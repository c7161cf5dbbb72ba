"""
SQLAlchemy модели базы данных
"""
from datetime import datetime
import enum
import uuid

from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, Integer, JSON,
    String, Text, ForeignKey, UniqueConstraint, Index, Uuid,
    Enum as SQLEnum
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base, relationship

from shared.config import DATABASE_URL

# Создаем базовый класс
Base = declarative_base()

# SQLite автоинкрементит только INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


def make_engine(url: str):
    """
    Создать async engine (asyncpg для PostgreSQL, aiosqlite для тестов)
    """
    url = url.replace("postgresql://", "postgresql+asyncpg://")
    kwargs = {"echo": False, "pool_pre_ping": True}
    if url.startswith("postgresql"):
        kwargs.update(pool_size=20, max_overflow=40)
    return create_async_engine(url, **kwargs)


def make_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# Создаем async engine
engine = make_engine(DATABASE_URL)

# Создаем session maker
AsyncSessionLocal = make_session_factory(engine)


# ========== Перечисления ==========

class UserStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BANNED = "BANNED"


class TaskStatus(str, enum.Enum):
    STARTED = "STARTED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


TASK_OPEN_STATUSES = (TaskStatus.STARTED, TaskStatus.PENDING)


class TransactionType(str, enum.Enum):
    TASK_REWARD = "TASK_REWARD"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    WITHDRAWAL = "WITHDRAWAL"
    DAILY_BONUS = "DAILY_BONUS"
    ADJUSTMENT = "ADJUSTMENT"


# Типы, которые увеличивают lifetime-earned
EARNING_TYPES = (TransactionType.TASK_REWARD, TransactionType.REFERRAL_BONUS, TransactionType.DAILY_BONUS)


class WithdrawalStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


WITHDRAWAL_OPEN_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)


class FraudAlertStatus(str, enum.Enum):
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


# ========== Модели ==========

class User(Base):
    """Пользователи"""
    __tablename__ = "users"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True)
    username = Column(String(255))
    first_name = Column(String(255))
    country = Column(String(2), nullable=True)
    is_premium = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    # Деньги (nano)
    balance_nano = Column(BigInteger, default=0, nullable=False)
    total_earned_nano = Column(BigInteger, default=0, nullable=False)

    # Антифрод
    risk_score = Column(Integer, default=0, nullable=False)
    status = Column(SQLEnum(UserStatus), default=UserStatus.ACTIVE, nullable=False)
    status_reason = Column(Text, nullable=True)
    status_changed_at = Column(DateTime, nullable=True)

    # Реферальная система: устанавливается один раз при создании
    referrer_id = Column(BigInteger, ForeignKey("users.id"), nullable=True, index=True)


class Offer(Base):
    """Офферы CPA сетей"""
    __tablename__ = "offers"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    external_id = Column(String(100), nullable=False)
    network = Column(String(20), nullable=False)  # CPAGRIP, OGADS, ADGATE
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(30), default="OTHER", nullable=False)
    difficulty = Column(String(10), default="EASY", nullable=False)
    estimated_minutes = Column(Integer, nullable=True)

    # Выплаты: сеть платит платформе, платформа платит пользователю
    network_payout_cents = Column(Integer, nullable=False)
    user_payout_cents = Column(Integer, nullable=False)
    user_payout_nano = Column(BigInteger, nullable=False)

    # Таргетинг
    countries = Column(JSONType, nullable=True)  # пусто = все страны
    devices = Column(JSONType, nullable=True)
    min_account_age_days = Column(Integer, default=0, nullable=False)
    premium_required = Column(Boolean, default=False, nullable=False)

    tracking_url = Column(Text, nullable=False, default="")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        UniqueConstraint("external_id", "network", name="uq_offer_external_network"),
    )


class Task(Base):
    """Попытка пользователя выполнить оффер"""
    __tablename__ = "tasks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    offer_id = Column(BigInteger, ForeignKey("offers.id"), nullable=False, index=True)
    session_token = Column(String(64), unique=True, nullable=False, index=True)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.STARTED, nullable=False)

    # Выплата фиксируется при старте
    payout_nano = Column(BigInteger, nullable=False)

    # "{user_id}:{offer_id}" пока задание не завершено, NULL после
    active_key = Column(String(64), unique=True, nullable=True)

    postback_data = Column(JSONType, nullable=True)
    postback_received_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, default=datetime.now, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)

    offer = relationship("Offer", lazy="joined")

    __table_args__ = (
        Index("idx_task_user_completed", "user_id", "completed_at"),
        Index("idx_task_status", "status"),
    )


class Transaction(Base):
    """Неизменяемая запись журнала"""
    __tablename__ = "transactions"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    amount_nano = Column(BigInteger, nullable=False)  # положительное для начисления, отрицательное для списания
    balance_before_nano = Column(BigInteger, nullable=False)
    balance_after_nano = Column(BigInteger, nullable=False)
    reference_id = Column(Uuid, nullable=True)  # task_id или withdrawal_id
    reference_type = Column(String(20), nullable=True)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    __table_args__ = (
        Index("idx_transaction_user_type_created", "user_id", "transaction_type", "created_at"),
    )


class DailyClaim(Base):
    """Ежедневный бонус: одна строка на пользователя в календарный день"""
    __tablename__ = "daily_claims"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    claim_date = Column(Date, nullable=False)
    streak = Column(Integer, default=1, nullable=False)
    amount_nano = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "claim_date", name="uq_daily_claim_user_date"),
    )


class DeviceSession(Base):
    """Наблюдения отпечатков устройства и IP"""
    __tablename__ = "device_sessions"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    fingerprint_hash = Column(String(128), nullable=True)
    ip_address = Column(String(64), nullable=True)
    seen_at = Column(DateTime, default=datetime.now, nullable=False)

    __table_args__ = (
        Index("idx_device_user_seen", "user_id", "seen_at"),
        Index("idx_device_fingerprint", "fingerprint_hash"),
    )


class Withdrawal(Base):
    """Заявки на вывод"""
    __tablename__ = "withdrawals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    amount_nano = Column(BigInteger, nullable=False)
    wallet_address = Column(String(100), nullable=False)
    status = Column(SQLEnum(WithdrawalStatus), default=WithdrawalStatus.PENDING, nullable=False)
    tx_hash = Column(String(128), nullable=True)
    admin_notes = Column(Text, nullable=True)
    processed_by = Column(BigInteger, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    __table_args__ = (
        Index("idx_withdrawal_user_status", "user_id", "status"),
    )


class FraudAlert(Base):
    """Антифрод-алерты (только для информации, деньги не блокируют)"""
    __tablename__ = "fraud_alerts"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    alert_type = Column(String(50), nullable=False)
    risk_score = Column(Integer, nullable=False)
    flags = Column(JSONType, nullable=True)
    status = Column(SQLEnum(FraudAlertStatus), default=FraudAlertStatus.OPEN, nullable=False)
    notes = Column(Text, nullable=True)
    resolved_by = Column(BigInteger, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    __table_args__ = (
        Index("idx_fraud_alert_user_status", "user_id", "status"),
    )


class AuditLog(Base):
    """Журнал действий администраторов"""
    __tablename__ = "audit_logs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    actor_type = Column(String(20), nullable=False)
    actor_id = Column(BigInteger, nullable=True)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(64), nullable=False)
    details = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)


# ========== Функции для работы с БД ==========

async def init_db(bind=None):
    """Инициализация базы данных"""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Закрыть соединение с БД"""
    await engine.dispose()


# Импортируем ReferralEarning после определения всех моделей
from shared.referral_model import ReferralEarning  # noqa: E402,F401
