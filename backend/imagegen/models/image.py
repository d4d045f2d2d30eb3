"""生成记录模型"""

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Index, Integer, JSON, Numeric, String, Text, Uuid

from imagegen.core.database import Base
from imagegen.core.timeutil import utcnow


class ImageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Image(Base):
    """图片生成记录 - 每次到达生成阶段的请求写一行，写入时即为终态"""
    __tablename__ = "images"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False)
    api_key_id = Column(Uuid, nullable=True)
    model_id = Column(Uuid, nullable=True)
    provider_id = Column(Uuid, nullable=True)

    prompt = Column(Text, nullable=False)
    negative_prompt = Column(Text, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)

    status = Column(String(20), default=ImageStatus.PENDING.value, nullable=False)
    image_url = Column(Text, nullable=True)
    credits_used = Column(Numeric(14, 4, asdecimal=False), default=0, nullable=False)
    generation_time_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    # 配额统计：某用户当天的图片数
    __table_args__ = (
        Index("idx_images_user_created", "user_id", "created_at"),
    )
