"""调用方 API Key 模型"""

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text, Uuid

from imagegen.core.database import Base
from imagegen.core.timeutil import utcnow


class APIKeyStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    REVOKED = "revoked"
    RATE_LIMITED = "rate_limited"


class APIKey(Base):
    """API Key 表 - 只存前缀和哈希，明文仅在创建时返回一次"""
    __tablename__ = "api_keys"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    key_prefix = Column(String(16), nullable=False, index=True)
    key_hash = Column(String(64), unique=True, nullable=False)
    status = Column(String(20), default=APIKeyStatus.ACTIVE.value, nullable=False)

    custom_rpm = Column(Integer, nullable=True)
    custom_rpd = Column(Integer, nullable=True)

    usage_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    last_used_ip = Column(Text, nullable=True)

    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
