"""
Модель ReferralEarning: одна выплата комиссии рефереру
"""
from datetime import datetime
from sqlalchemy import BigInteger, Column, DateTime, Integer, ForeignKey, UniqueConstraint, Index, Uuid
from shared.database import Base, BigIntPK


class ReferralEarning(Base):
    """Реферальные начисления: одна строка на (task, tier)"""
    __tablename__ = "referral_earnings"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    referrer_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)  # Кто получил
    referred_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)  # Чьё задание
    tier = Column(Integer, nullable=False)  # 1, 2, 3
    task_id = Column(Uuid, ForeignKey("tasks.id"), nullable=False)
    amount_nano = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    __table_args__ = (
        UniqueConstraint("task_id", "tier", name="uq_referral_earning_task_tier"),
        Index("idx_referral_earning_referrer", "referrer_id", "tier"),
    )
