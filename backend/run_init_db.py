import asyncio
import logging

from imagegen.core.database import async_session_maker, init_db
from imagegen.models import SystemSetting

# 配置日志
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# 首次部署时写入的系统设置，已存在的键不覆盖
DEFAULT_SYSTEM_SETTINGS = {
    "maintenance_mode": (False, "维护开关"),
    "maintenance_message": ("System is under maintenance", "维护期间返回给调用方的提示"),
    "default_rpm": (60, "默认每分钟请求数"),
    "default_rpd": (1000, "默认每天请求数"),
}


async def seed_system_settings():
    async with async_session_maker() as session:
        for key, (value, description) in DEFAULT_SYSTEM_SETTINGS.items():
            if await session.get(SystemSetting, key) is None:
                session.add(SystemSetting(key=key, value=value, description=description))
                logger.info(f"Seeded system setting {key}={value!r}")
        await session.commit()


async def main():
    logger.info("Initializing database tables...")
    try:
        await init_db()
        await seed_system_settings()
        logger.info("Database tables initialized successfully.")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

if __name__ == "__main__":
    asyncio.run(main())
