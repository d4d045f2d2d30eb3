"""API Key 签发与吊销"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.config import get_settings
from imagegen.core.errors import APIKeyError
from imagegen.core.security import api_key_prefix, generate_api_key, hash_api_key
from imagegen.core.timeutil import utcnow
from imagegen.models.api_key import APIKey, APIKeyStatus

logger = logging.getLogger(__name__)

NEW_KEY_WARNING = "Save this key securely. It will not be shown again."


@dataclass
class IssuedKey:
    """新签发的 Key，plaintext 只在这里出现一次"""
    record: APIKey
    plaintext: str


class APIKeyService:
    """API Key 管理"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.max_active = get_settings().max_active_api_keys

    async def count_active(self, user_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(APIKey)
            .where(APIKey.user_id == user_id, APIKey.status == APIKeyStatus.ACTIVE.value)
        )
        return result.scalar_one()

    async def issue(self, user_id: UUID, name: Optional[str], expires_in_days: Optional[int] = None) -> IssuedKey:
        """
        签发新 Key

        Raises:
            APIKeyError: 名称为空或活跃 Key 数已达上限
        """
        if not name or not name.strip():
            raise APIKeyError("Key name is required")

        if await self.count_active(user_id) >= self.max_active:
            raise APIKeyError(f"Maximum of {self.max_active} active API keys allowed")

        plaintext = generate_api_key()
        expires_at = None
        if expires_in_days and expires_in_days > 0:
            expires_at = utcnow() + timedelta(days=expires_in_days)

        record = APIKey(
            user_id=user_id,
            name=name.strip(),
            key_prefix=api_key_prefix(plaintext),
            key_hash=hash_api_key(plaintext),
            status=APIKeyStatus.ACTIVE.value,
            expires_at=expires_at,
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)

        logger.info(f"Issued API key {record.id} ({record.key_prefix}) for user {user_id}")
        return IssuedKey(record=record, plaintext=plaintext)

    async def revoke(self, user_id: UUID, key_id: UUID) -> APIKey:
        """
        吊销 Key，只能吊销自己的

        Raises:
            APIKeyError: Key 不存在或不属于该用户 (404)
        """
        result = await self.db.execute(
            select(APIKey).where(APIKey.id == key_id, APIKey.user_id == user_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise APIKeyError("API key not found", status_code=404)

        record.status = APIKeyStatus.REVOKED.value
        await self.db.commit()

        logger.info(f"Revoked API key {record.id} for user {user_id}")
        return record
