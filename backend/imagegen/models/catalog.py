"""Provider 与模型目录"""

import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    Uuid,
)

from imagegen.core.database import Base
from imagegen.core.timeutil import utcnow


class ProviderStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    ERROR = "error"


class Provider(Base):
    """上游生成服务商"""
    __tablename__ = "providers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), unique=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    base_url = Column(Text, nullable=True)
    api_key_encrypted = Column(Text, nullable=True)  # AES-GCM 密文
    key_encrypted_at = Column(DateTime, nullable=True)
    status = Column(String(20), default=ProviderStatus.ACTIVE.value, nullable=False)
    priority = Column(Integer, default=100, nullable=False)
    cost_per_image = Column(Numeric(14, 6, asdecimal=False), default=0, nullable=False)
    config = Column(JSON, default=dict)

    # 健康检查结果
    last_test_at = Column(DateTime, nullable=True)
    last_test_status = Column(String(30), default="never_tested")
    last_test_message = Column(Text, nullable=True)
    last_test_response_time = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ModelStatus(str, Enum):
    """模型状态"""
    ACTIVE = "active"
    BETA = "beta"
    DISABLED = "disabled"
    OFFLINE = "offline"


UNAVAILABLE_MODEL_STATUSES = {ModelStatus.DISABLED.value, ModelStatus.OFFLINE.value}


class AIModel(Base):
    """生成模型"""
    __tablename__ = "ai_models"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid, ForeignKey("providers.id", ondelete="SET NULL"), nullable=True)
    name = Column(String(100), nullable=False)
    model_id = Column(String(200), unique=True, nullable=False)  # 上游模型标识
    description = Column(Text, nullable=True)
    category = Column(String(50), default="image", nullable=False)
    engine_type = Column(String(50), default="text-to-image", nullable=False)
    api_endpoint = Column(Text, nullable=True)
    api_key_encrypted = Column(Text, nullable=True)

    status = Column(String(20), default=ModelStatus.ACTIVE.value, nullable=False)
    is_soft_disabled = Column(Boolean, default=False, nullable=False)
    soft_disable_message = Column(Text, nullable=True)
    cooldown_until = Column(DateTime, nullable=True)
    fallback_model_id = Column(Uuid, ForeignKey("ai_models.id", ondelete="SET NULL"), nullable=True)

    credits_cost = Column(Numeric(14, 4, asdecimal=False), default=1, nullable=False)
    rpm = Column(Integer, default=60, nullable=False)
    rpd = Column(Integer, default=1000, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("credits_cost >= 0", name="ai_models_credits_cost_check"),
        CheckConstraint("fallback_model_id IS NULL OR fallback_model_id <> id", name="ai_models_fallback_not_self"),
    )
