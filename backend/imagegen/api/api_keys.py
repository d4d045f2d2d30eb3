"""API Key 管理 API

只接受会话令牌，不能用 API Key 创建或吊销 API Key。
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.database import get_db
from imagegen.core.deps import get_session_user_id
from imagegen.services.api_keys import NEW_KEY_WARNING, APIKeyService

router = APIRouter(tags=["api_keys"])


class CreateAPIKeyRequest(BaseModel):
    """创建 API Key 请求"""
    name: Optional[str] = Field(None, description="Key 名称")
    expires_in_days: Optional[int] = Field(None, description="有效天数，不传或 <= 0 表示永不过期")


class CreatedAPIKey(BaseModel):
    id: UUID
    name: str
    key: str
    key_prefix: str
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    status: str


class CreateAPIKeyResponse(BaseModel):
    """创建结果，完整 Key 只返回这一次"""
    success: bool = True
    api_key: CreatedAPIKey
    warning: str = NEW_KEY_WARNING


@router.post("/create-api-key", response_model=CreateAPIKeyResponse)
async def create_api_key(
    request: CreateAPIKeyRequest,
    user_id: UUID = Depends(get_session_user_id),
    db: AsyncSession = Depends(get_db),
):
    """创建 API Key"""
    issued = await APIKeyService(db).issue(user_id, request.name, request.expires_in_days)
    record = issued.record

    return CreateAPIKeyResponse(
        api_key=CreatedAPIKey(
            id=record.id,
            name=record.name,
            key=issued.plaintext,
            key_prefix=record.key_prefix,
            created_at=record.created_at,
            expires_at=record.expires_at,
            status=record.status,
        )
    )


@router.post("/api-keys/{key_id}/revoke")
async def revoke_api_key(
    key_id: UUID,
    user_id: UUID = Depends(get_session_user_id),
    db: AsyncSession = Depends(get_db),
):
    """吊销 API Key"""
    record = await APIKeyService(db).revoke(user_id, key_id)
    return {"success": True, "id": str(record.id), "status": record.status}
