"""用户档案与积分模型"""

import uuid
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, Numeric, String, Text, Uuid

from imagegen.core.database import Base
from imagegen.core.timeutil import utcnow


class Profile(Base):
    """用户档案表 - 封禁状态、每日图片上限、限流覆盖值"""
    __tablename__ = "profiles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, unique=True, nullable=False, index=True)
    username = Column(String(100), unique=True, nullable=True)
    email = Column(String(255), nullable=True)

    # 封禁
    is_banned = Column(Boolean, default=False, nullable=False)
    banned_at = Column(DateTime, nullable=True)
    ban_reason = Column(Text, nullable=True)

    # 配额与限流覆盖（NULL 表示使用系统默认值 / 不限）
    max_images_per_day = Column(Integer, default=100, nullable=True)
    custom_rpm = Column(Integer, nullable=True)
    custom_rpd = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UserCredits(Base):
    """用户积分表 - 每日赠送积分 + 购买余额两个池"""
    __tablename__ = "user_credits"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, unique=True, nullable=False, index=True)
    balance = Column(Numeric(14, 4, asdecimal=False), default=0, nullable=False)
    daily_credits = Column(Numeric(14, 4, asdecimal=False), default=0, nullable=False)
    last_daily_reset = Column(DateTime, default=utcnow, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="user_credits_balance_check"),
        CheckConstraint("daily_credits >= 0", name="user_credits_daily_credits_check"),
    )


class CreditTransactionType(str, Enum):
    """积分流水类型"""
    ADD = "add"
    DEDUCT = "deduct"
    PURCHASE = "purchase"
    REFUND = "refund"
    EXPIRE = "expire"
    DAILY_RESET = "daily_reset"
    GENERATION = "generation"


class CreditTransaction(Base):
    """积分流水表 - 只追加，不修改"""
    __tablename__ = "credits_transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    type = Column(String(20), nullable=False)  # CreditTransactionType
    amount = Column(Numeric(14, 4, asdecimal=False), nullable=False)  # 带符号
    reason = Column(Text, nullable=True)
    admin_id = Column(Uuid, nullable=True)
    related_image_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
