"""系统设置读取（system_settings 键值表）"""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.models.logs import SystemSetting


async def get_system_setting(db: AsyncSession, key: str) -> Any:
    """读取设置值，不存在返回 None"""
    result = await db.execute(select(SystemSetting.value).where(SystemSetting.key == key))
    return result.scalar_one_or_none()


def as_bool(value: Any) -> bool:
    """JSON 值转布尔（兼容 "true" 字符串）"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def as_positive_int(value: Any) -> Optional[int]:
    """JSON 值转正整数，无法解析时返回 None"""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


async def get_int_setting(db: AsyncSession, key: str, default: int) -> int:
    """读取整数设置，缺失或非法时使用默认值"""
    value = as_positive_int(await get_system_setting(db, key))
    return value if value is not None else default
