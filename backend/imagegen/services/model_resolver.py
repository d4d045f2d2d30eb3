"""模型解析 - 可用性检查与冷却回退

主模型冷却中时沿 fallback_model_id 查找替代模型，每一跳都重新校验状态，
用已访问集合防止环。替换对调用方透明。
"""

import logging
from datetime import datetime
from typing import Optional, Set
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.config import get_settings
from imagegen.core.errors import ModelError, ModelErrorKind
from imagegen.core.timeutil import utcnow
from imagegen.models.catalog import AIModel, Provider, UNAVAILABLE_MODEL_STATUSES
from imagegen.services.context import ResolvedModel

logger = logging.getLogger(__name__)

COOLDOWN_MESSAGE = "Model is in cooldown, please try again later"


def in_cooldown(model: AIModel, now: datetime) -> bool:
    return model.cooldown_until is not None and model.cooldown_until > now


def is_usable(model: AIModel, now: datetime) -> bool:
    """状态正常、未软禁用、不在冷却中"""
    return (
        model.status not in UNAVAILABLE_MODEL_STATUSES
        and not model.is_soft_disabled
        and not in_cooldown(model, now)
    )


class ModelResolver:
    """模型解析器"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.default_cost = get_settings().default_credits_cost

    async def resolve(self, model_id: Optional[UUID], now: Optional[datetime] = None) -> ResolvedModel:
        """
        解析请求的模型

        Args:
            model_id: 请求的模型 ID，None 表示使用隐式默认模型

        Raises:
            ModelError: 模型不存在、停用、软禁用，或冷却中且没有可用的回退模型
        """
        if model_id is None:
            return ResolvedModel(model=None, provider=None, credits_cost=self.default_cost)

        now = now or utcnow()
        model = await self._load(model_id)
        if model is None:
            raise ModelError(ModelErrorKind.NOT_FOUND, "Model not found")

        if model.status in UNAVAILABLE_MODEL_STATUSES:
            raise ModelError(ModelErrorKind.UNAVAILABLE, "Model is currently unavailable")

        if model.is_soft_disabled:
            raise ModelError(
                ModelErrorKind.SOFT_DISABLED,
                model.soft_disable_message or "Model temporarily unavailable",
            )

        resolved = model
        if in_cooldown(model, now):
            resolved = await self._follow_fallback(model, now)
            logger.info(f"Model {model.id} in cooldown, substituted fallback {resolved.id}")

        return ResolvedModel(
            model=resolved,
            provider=await self._load_provider(resolved.provider_id),
            credits_cost=float(resolved.credits_cost or self.default_cost),
            model_id=resolved.id,
            provider_id=resolved.provider_id,
            requested_model_id=model_id,
        )

    async def _follow_fallback(self, model: AIModel, now: datetime) -> AIModel:
        visited: Set[UUID] = {model.id}
        current = model

        while current.fallback_model_id is not None:
            if current.fallback_model_id in visited:
                logger.warning(f"Fallback cycle detected at model {current.id}")
                break

            visited.add(current.fallback_model_id)
            candidate = await self._load(current.fallback_model_id)
            if candidate is None:
                break
            if is_usable(candidate, now):
                return candidate
            # 回退模型本身也在冷却中时继续沿链查找；停用/软禁用则终止
            if candidate.status in UNAVAILABLE_MODEL_STATUSES or candidate.is_soft_disabled:
                logger.warning(f"Fallback model {candidate.id} is not usable")
                break
            current = candidate

        raise ModelError(ModelErrorKind.COOLDOWN, COOLDOWN_MESSAGE)

    async def _load(self, model_id: UUID) -> Optional[AIModel]:
        result = await self.db.execute(select(AIModel).where(AIModel.id == model_id))
        return result.scalar_one_or_none()

    async def _load_provider(self, provider_id: Optional[UUID]) -> Optional[Provider]:
        if provider_id is None:
            return None
        result = await self.db.execute(select(Provider).where(Provider.id == provider_id))
        return result.scalar_one_or_none()
