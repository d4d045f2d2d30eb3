"""访问控制 - 账号封禁与 IP 黑名单"""

import ipaddress
import logging
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.errors import AccessError, AccessErrorKind
from imagegen.core.timeutil import utcnow
from imagegen.models.account import Profile
from imagegen.models.logs import IPBlocklist, SecurityEventType, Severity
from imagegen.services.context import ClientInfo, Principal
from imagegen.services.security_events import record_security_event

logger = logging.getLogger(__name__)


def client_ip_from_headers(
    forwarded_for: Optional[str],
    cf_connecting_ip: Optional[str],
    peer_host: Optional[str],
) -> str:
    """取真实客户端 IP：X-Forwarded-For 第一个 > CF-Connecting-IP > 连接地址"""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    if cf_connecting_ip:
        return cf_connecting_ip.strip()
    return peer_host or "unknown"


def is_ip_in_cidr(ip: str, cidr: str) -> bool:
    """检查 IP 是否在 CIDR 范围内；无法解析时按字符串精确比较"""
    if "/" not in cidr:
        return ip == cidr
    try:
        network = ipaddress.ip_network(cidr, strict=False)
        return ipaddress.ip_address(ip) in network
    except ValueError:
        return ip == cidr.split("/")[0]


class AccessGuard:
    """封禁账号与黑名单 IP 检查"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def check(self, principal: Principal, client: ClientInfo) -> Optional[Profile]:
        """
        检查访问权限

        会用档案中的 custom_rpm / custom_rpd 补全 Principal 上未设置的覆盖值。

        Returns:
            用户档案（可能为 None）

        Raises:
            AccessError: 账号被封禁或 IP 在黑名单中
        """
        result = await self.db.execute(select(Profile).where(Profile.user_id == principal.user_id))
        profile = result.scalar_one_or_none()

        if profile is not None:
            if profile.is_banned:
                raise AccessError(
                    AccessErrorKind.BANNED,
                    f"Account banned: {profile.ban_reason or 'Contact support'}",
                )
            if principal.custom_rpm is None:
                principal.custom_rpm = profile.custom_rpm
            if principal.custom_rpd is None:
                principal.custom_rpd = profile.custom_rpd

        blocked = await self.find_block(client.ip_address)
        if blocked is not None:
            await record_security_event(
                self.db,
                SecurityEventType.BLOCKED_IP,
                Severity.HIGH,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                user_id=principal.user_id,
                api_key_id=principal.api_key_id,
                details={"reason": blocked.reason},
            )
            raise AccessError(AccessErrorKind.BLOCKED, "Access denied")

        return profile

    async def find_block(self, ip: str) -> Optional[IPBlocklist]:
        """查找命中的未过期黑名单条目（精确地址或 CIDR 段）"""
        now = utcnow()
        result = await self.db.execute(
            select(IPBlocklist).where(
                or_(IPBlocklist.ip_address == ip, IPBlocklist.cidr_range.is_not(None)),
                or_(IPBlocklist.expires_at.is_(None), IPBlocklist.expires_at > now),
            )
        )
        for entry in result.scalars():
            if entry.ip_address == ip:
                return entry
            if entry.cidr_range and is_ip_in_cidr(ip, entry.cidr_range):
                return entry
        return None
