"""图像生成 API"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.database import get_db
from imagegen.core.deps import get_client_info, get_invoker, get_rate_cache
from imagegen.services.context import ClientInfo, GenerationParams
from imagegen.services.generation_invoker import GenerationInvoker
from imagegen.services.pipeline import GenerationPipeline
from imagegen.services.rate_cache import RateCache

router = APIRouter(tags=["generation"])


class GenerateImageRequest(BaseModel):
    """生成请求；prompt 为空时由管线返回 400"""
    prompt: Optional[str] = Field(None, description="提示词")
    negative_prompt: Optional[str] = Field(None, description="反向提示词")
    model_id: Optional[UUID] = Field(None, description="模型 ID，不传则使用默认模型")
    width: Optional[int] = None
    height: Optional[int] = None
    steps: Optional[int] = None
    cfg_scale: Optional[float] = None
    seed: Optional[int] = None
    num_images: Optional[int] = None


class GeneratedImage(BaseModel):
    id: UUID
    url: str
    prompt: str
    width: int
    height: int
    generation_time_ms: int


class CreditsSummary(BaseModel):
    used: float
    balance: float
    daily_remaining: float


class GenerateImageResponse(BaseModel):
    """生成成功响应"""
    success: bool = True
    image: GeneratedImage
    credits: CreditsSummary


@router.post("/generate-image", response_model=GenerateImageResponse)
async def generate_image(
    request: GenerateImageRequest,
    x_api_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    client: ClientInfo = Depends(get_client_info),
    db: AsyncSession = Depends(get_db),
    invoker: GenerationInvoker = Depends(get_invoker),
    rate_cache: RateCache = Depends(get_rate_cache),
):
    """
    生成图片

    认证方式二选一：x-api-key header 或 Authorization: Bearer 会话令牌。
    成功时按模型价格扣费，失败不扣费。
    """
    params = GenerationParams(**request.model_dump())
    pipeline = GenerationPipeline(db, invoker, rate_cache)
    result = await pipeline.run(params, client, api_key=x_api_key, authorization=authorization)

    return GenerateImageResponse(
        image=GeneratedImage(
            id=result.image_id,
            url=result.image_url,
            prompt=result.prompt,
            width=result.width,
            height=result.height,
            generation_time_ms=result.generation_time_ms,
        ),
        credits=CreditsSummary(
            used=result.credits_used,
            balance=result.balances.balance,
            daily_remaining=result.balances.daily_credits,
        ),
    )
