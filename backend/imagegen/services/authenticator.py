"""请求认证 - API Key 或会话令牌"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.errors import AuthError, AuthErrorKind
from imagegen.core.security import (
    InvalidSessionToken,
    api_key_prefix,
    hash_api_key,
    verify_session_token,
)
from imagegen.core.timeutil import utcnow
from imagegen.models.api_key import APIKey, APIKeyStatus
from imagegen.models.logs import SecurityEventType, Severity
from imagegen.services.context import ClientInfo, Principal
from imagegen.services.security_events import record_security_event

logger = logging.getLogger(__name__)


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """从 Authorization header 中取出 Bearer token"""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


class RequestAuthenticator:
    """认证器：优先 x-api-key，其次 Bearer 会话"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def authenticate(
        self,
        api_key: Optional[str],
        authorization: Optional[str],
        client: ClientInfo,
    ) -> Principal:
        """
        解析调用方身份

        Args:
            api_key: x-api-key header
            authorization: Authorization header
            client: 请求来源（记录安全事件用）

        Returns:
            Principal

        Raises:
            AuthError: 凭证缺失、无效、停用或过期
        """
        if api_key:
            return await self._authenticate_api_key(api_key, client)

        if authorization:
            return self._authenticate_session(authorization)

        raise AuthError(AuthErrorKind.MISSING_CREDENTIAL, "Authentication required")

    async def _authenticate_api_key(self, raw_key: str, client: ClientInfo) -> Principal:
        result = await self.db.execute(
            select(APIKey).where(
                APIKey.key_prefix == api_key_prefix(raw_key),
                APIKey.key_hash == hash_api_key(raw_key),
            )
        )
        key = result.scalar_one_or_none()

        if key is None:
            await record_security_event(
                self.db,
                SecurityEventType.API_ABUSE,
                Severity.MEDIUM,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                details={"reason": "Invalid API key"},
            )
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, "Invalid API key")

        if key.status != APIKeyStatus.ACTIVE.value:
            raise AuthError(AuthErrorKind.KEY_INACTIVE, f"API key is {key.status}")

        if key.expires_at is not None and key.expires_at < utcnow():
            raise AuthError(AuthErrorKind.KEY_EXPIRED, "API key has expired")

        return Principal(
            user_id=key.user_id,
            api_key_id=key.id,
            custom_rpm=key.custom_rpm,
            custom_rpd=key.custom_rpd,
        )

    def _authenticate_session(self, authorization: str) -> Principal:
        token = parse_bearer(authorization)
        if token is None:
            raise AuthError(AuthErrorKind.INVALID_SESSION, "Invalid session")

        try:
            user_id = verify_session_token(token)
        except InvalidSessionToken as e:
            logger.info(f"Session token rejected: {e}")
            raise AuthError(AuthErrorKind.INVALID_SESSION, "Invalid session")

        return Principal(user_id=user_id)
