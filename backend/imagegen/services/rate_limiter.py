"""请求限流 - RPM / RPD

计数来自 request_logs 中已提交的行，即之前已经走到终态并写了日志的请求。
同一用户的并发请求可能在彼此日志提交前都通过检查，属于已知的短暂超量。
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.config import get_settings
from imagegen.core.errors import RateLimitError, RateLimitKind
from imagegen.core.timeutil import seconds_until_next_utc_day, start_of_utc_day, utcnow
from imagegen.models.logs import RequestLog, SecurityEventType, Severity
from imagegen.services.context import ClientInfo, Principal
from imagegen.services.rate_cache import RateCache
from imagegen.services.security_events import record_security_event
from imagegen.services.system_settings import get_int_setting

logger = logging.getLogger(__name__)

MINUTE_WINDOW = timedelta(seconds=60)

_MESSAGES = {
    RateLimitKind.PER_MINUTE: "Rate limit exceeded (requests per minute)",
    RateLimitKind.PER_DAY: "Rate limit exceeded (requests per day)",
}


@dataclass
class EffectiveLimits:
    rpm: int
    rpd: int


def _epoch(moment: datetime) -> float:
    return moment.replace(tzinfo=timezone.utc).timestamp()


class RateLimiter:
    """按用户限流"""

    def __init__(self, db: AsyncSession, cache: Optional[RateCache] = None):
        self.db = db
        self.cache = cache
        self.settings = get_settings()

    async def effective_limits(self, principal: Principal) -> EffectiveLimits:
        """身份级覆盖值优先，否则取系统默认"""
        rpm = principal.custom_rpm or await get_int_setting(self.db, "default_rpm", self.settings.default_rpm)
        rpd = principal.custom_rpd or await get_int_setting(self.db, "default_rpd", self.settings.default_rpd)
        return EffectiveLimits(rpm=rpm, rpd=rpd)

    async def count_requests(self, principal: Principal, now: datetime) -> Tuple[int, int, Optional[datetime]]:
        """
        统计已记录的请求数

        Returns:
            (最近 60 秒请求数, 当天 UTC 请求数, 60 秒窗口内最早请求时间)
        """
        minute_start = now - MINUTE_WINDOW
        result = await self.db.execute(
            select(func.count(RequestLog.id), func.min(RequestLog.created_at)).where(
                RequestLog.user_id == principal.user_id,
                RequestLog.created_at >= minute_start,
            )
        )
        minute_count, oldest = result.one()

        day_count = await self.db.scalar(
            select(func.count(RequestLog.id)).where(
                RequestLog.user_id == principal.user_id,
                RequestLog.created_at >= start_of_utc_day(now),
            )
        )
        return minute_count or 0, day_count or 0, oldest

    async def check(self, principal: Principal, client: ClientInfo, now: Optional[datetime] = None) -> EffectiveLimits:
        """
        检查限流

        Raises:
            RateLimitError: 超过 RPM 或 RPD
        """
        now = now or utcnow()
        limits = await self.effective_limits(principal)

        # 缓存命中只会让已确认的拒绝更快返回
        for kind, limit in ((RateLimitKind.PER_MINUTE, limits.rpm), (RateLimitKind.PER_DAY, limits.rpd)):
            until = await self._cached_block(principal, kind, limit)
            if until is not None:
                await self._record_rejection(principal, client, kind, limit)
                raise RateLimitError(kind, _MESSAGES[kind], retry_after=max(1, math.ceil(until - _epoch(now))))

        minute_count, day_count, oldest = await self.count_requests(principal, now)

        if minute_count >= limits.rpm:
            retry_after = 60
            if oldest is not None:
                retry_after = max(1, math.ceil((oldest + MINUTE_WINDOW - now).total_seconds()))
            await self._reject(principal, client, RateLimitKind.PER_MINUTE, limits.rpm, now, retry_after)

        if day_count >= limits.rpd:
            await self._reject(
                principal, client, RateLimitKind.PER_DAY, limits.rpd, now, seconds_until_next_utc_day(now)
            )

        return limits

    def _cache_key(self, principal: Principal, kind: RateLimitKind, limit: int) -> str:
        # 限额变化后旧的缓存条目自然失效
        return f"{principal.user_id}:{kind.value}:{limit}"

    async def _cached_block(self, principal: Principal, kind: RateLimitKind, limit: int) -> Optional[float]:
        if self.cache is None:
            return None
        return await self.cache.get(self._cache_key(principal, kind, limit))

    async def _reject(
        self,
        principal: Principal,
        client: ClientInfo,
        kind: RateLimitKind,
        limit: int,
        now: datetime,
        retry_after: int,
    ) -> None:
        if self.cache is not None:
            await self.cache.set(self._cache_key(principal, kind, limit), _epoch(now) + retry_after)

        await self._record_rejection(principal, client, kind, limit)
        raise RateLimitError(kind, _MESSAGES[kind], retry_after=retry_after)

    async def _record_rejection(
        self, principal: Principal, client: ClientInfo, kind: RateLimitKind, limit: int
    ) -> None:
        """每次拒绝都写一条安全事件，无论是否命中缓存"""
        message = _MESSAGES[kind]
        await record_security_event(
            self.db,
            SecurityEventType.RATE_LIMIT,
            Severity.LOW,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            user_id=principal.user_id,
            api_key_id=principal.api_key_id,
            details={"error": message, "limit": limit},
        )
        logger.info(f"Rate limit hit for user {principal.user_id}: {kind.value} limit={limit}")
