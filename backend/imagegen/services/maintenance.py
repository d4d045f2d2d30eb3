"""维护模式开关"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.errors import MaintenanceError
from imagegen.services.system_settings import as_bool, get_system_setting

logger = logging.getLogger(__name__)

DEFAULT_MAINTENANCE_MESSAGE = "System is under maintenance"


async def check_maintenance(db: AsyncSession) -> None:
    """维护模式开启时直接拒绝请求"""
    if not as_bool(await get_system_setting(db, "maintenance_mode")):
        return

    message = await get_system_setting(db, "maintenance_message")
    logger.info("Request rejected: maintenance mode is on")
    raise MaintenanceError(message if isinstance(message, str) and message else DEFAULT_MAINTENANCE_MESSAGE)
