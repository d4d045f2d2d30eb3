"""限流缓存 - 记住"某用户在某窗口内已被拒绝到 T 时刻"

缓存只是优化：它只能让一次已由持久化计数确认过的拒绝更快返回，
绝不能单独放行请求。实例重启或多实例之间不一致都是允许的。
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional

from redis.asyncio import Redis

from imagegen.core.config import get_settings

settings = get_settings()


class RateCache(ABC):
    """限流缓存接口"""

    @abstractmethod
    async def get(self, key: str) -> Optional[float]:
        """返回拒绝截止时间（epoch 秒），没有或已过期返回 None"""

    @abstractmethod
    async def set(self, key: str, until: float) -> None:
        """记录拒绝截止时间"""


class InMemoryRateCache(RateCache):
    """基于内存的固定容量 LRU + TTL 缓存"""

    def __init__(self, capacity: int = 10_000, ttl: int = 60):
        self.capacity = capacity
        self.ttl = ttl
        # key -> (拒绝截止时间, 条目过期时间)
        self.entries: "OrderedDict[str, tuple[float, float]]" = OrderedDict()
        self.lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[float]:
        async with self.lock:
            entry = self.entries.get(key)
            if entry is None:
                return None

            until, expires_at = entry
            current_time = time.time()
            if current_time >= expires_at or current_time >= until:
                del self.entries[key]
                return None

            self.entries.move_to_end(key)
            return until

    async def set(self, key: str, until: float) -> None:
        async with self.lock:
            current_time = time.time()
            # TTL 与拒绝截止时间取较早者
            expires_at = min(until, current_time + self.ttl)
            self.entries[key] = (until, expires_at)
            self.entries.move_to_end(key)

            # 超出容量时淘汰最久未使用的条目
            while len(self.entries) > self.capacity:
                self.entries.popitem(last=False)

    async def cleanup(self) -> None:
        """清理过期条目"""
        async with self.lock:
            current_time = time.time()
            expired = [
                key for key, (until, expires_at) in self.entries.items()
                if current_time >= expires_at or current_time >= until
            ]
            for key in expired:
                del self.entries[key]


class RedisRateCache(RateCache):
    """基于 Redis 的缓存，多实例共享"""

    KEY_PREFIX = "rate_block:"

    def __init__(self, redis: Redis, ttl: int = 60):
        self.redis = redis
        self.ttl = ttl

    async def get(self, key: str) -> Optional[float]:
        value = await self.redis.get(self.KEY_PREFIX + key)
        if value is None:
            return None
        try:
            until = float(value)
        except ValueError:
            return None
        return until if until > time.time() else None

    async def set(self, key: str, until: float) -> None:
        seconds = int(min(until - time.time(), self.ttl))
        if seconds <= 0:
            return
        await self.redis.setex(self.KEY_PREFIX + key, seconds, str(until))


# 进程内默认实例
memory_rate_cache = InMemoryRateCache(
    capacity=settings.rate_cache_capacity,
    ttl=settings.rate_cache_ttl_seconds,
)


# 定期清理任务
async def cleanup_task(cache: InMemoryRateCache = memory_rate_cache):
    """定期清理过期数据"""
    while True:
        await asyncio.sleep(300)  # 每5分钟清理一次
        await cache.cleanup()
