"""每日图片配额"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.errors import QuotaError
from imagegen.core.timeutil import seconds_until_next_utc_day, start_of_utc_day, utcnow
from imagegen.models.account import Profile
from imagegen.models.image import Image


class QuotaEnforcer:
    """
    每日图片数上限

    与 RPM/RPD 相互独立：限流约束请求量，这里约束当天生成记录的数量。
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def images_today(self, user_id: UUID, now: Optional[datetime] = None) -> int:
        """当天（UTC）该用户的图片记录数"""
        now = now or utcnow()
        count = await self.db.scalar(
            select(func.count(Image.id)).where(
                Image.user_id == user_id,
                Image.created_at >= start_of_utc_day(now),
            )
        )
        return count or 0

    async def check(self, user_id: UUID, profile: Optional[Profile], now: Optional[datetime] = None) -> None:
        """
        检查每日图片配额，max_images_per_day 为空表示不限

        Raises:
            QuotaError: 已达上限
        """
        if profile is None or profile.max_images_per_day is None:
            return

        now = now or utcnow()
        used = await self.images_today(user_id, now)
        if used >= profile.max_images_per_day:
            raise QuotaError(retry_after=seconds_until_next_utc_day(now))
