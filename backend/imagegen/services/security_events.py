"""安全事件记录"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.models.logs import SecurityEvent, SecurityEventType, Severity

logger = logging.getLogger(__name__)


async def record_security_event(
    db: AsyncSession,
    event_type: SecurityEventType,
    severity: Severity,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    user_id: Optional[UUID] = None,
    api_key_id: Optional[UUID] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """写入一条安全事件并立即提交，不随后续的请求失败回滚"""
    db.add(
        SecurityEvent(
            event_type=event_type.value,
            severity=severity.value,
            ip_address=ip_address,
            user_agent=user_agent,
            user_id=user_id,
            api_key_id=api_key_id,
            details=details or {},
        )
    )
    await db.commit()
    logger.warning(f"Security event {event_type.value} ({severity.value}) user={user_id} ip={ip_address}")
