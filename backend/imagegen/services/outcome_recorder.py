"""结果记录 - 生成记录、积分流水、使用计数、请求日志

只有走到生成阶段的请求才会进入这里，每个请求恰好写一行 images 记录（终态）。
"""

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.config import get_settings
from imagegen.core.errors import CreditError, GenError
from imagegen.core.timeutil import utcnow
from imagegen.models.account import CreditTransaction, CreditTransactionType
from imagegen.models.api_key import APIKey
from imagegen.models.catalog import AIModel
from imagegen.models.image import Image, ImageStatus
from imagegen.models.logs import RequestLog
from imagegen.services.context import (
    ClientInfo,
    GenerationOutcome,
    GenerationParams,
    GenerationResult,
    Principal,
    ResolvedModel,
)
from imagegen.services.credit_ledger import CreditLedger, SettlementConflict

logger = logging.getLogger(__name__)

ENDPOINT = "/generate-image"
DEFAULT_SIZE = 1024
DEFAULT_CFG_SCALE = 7
DEFAULT_NUM_IMAGES = 1


class OutcomeRecorder:
    """生成结果落库"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = CreditLedger(db)
        self.max_error_length = get_settings().error_text_max_length

    def _truncate(self, text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        return text[: self.max_error_length]

    def _request_log(
        self,
        principal: Principal,
        client: ClientInfo,
        status_code: Optional[int],
        elapsed_ms: int,
        error_message: Optional[str] = None,
        image_id=None,
    ) -> RequestLog:
        return RequestLog(
            user_id=principal.user_id,
            api_key_id=principal.api_key_id,
            image_id=image_id,
            endpoint=ENDPOINT,
            method="POST",
            status_code=status_code,
            response_time_ms=elapsed_ms,
            error_message=error_message,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )

    def _failed_image(
        self,
        principal: Principal,
        params: GenerationParams,
        resolved: ResolvedModel,
        error_text: str,
        elapsed_ms: int,
    ) -> Image:
        return Image(
            user_id=principal.user_id,
            api_key_id=principal.api_key_id,
            prompt=params.prompt,
            negative_prompt=params.negative_prompt,
            model_id=resolved.model_id,
            provider_id=resolved.provider_id,
            status=ImageStatus.FAILED.value,
            error=self._truncate(error_text),
            generation_time_ms=elapsed_ms,
            width=params.width,
            height=params.height,
            credits_used=0,
        )

    async def record_failure(
        self,
        principal: Principal,
        client: ClientInfo,
        params: GenerationParams,
        resolved: ResolvedModel,
        error: GenError,
        elapsed_ms: int,
    ) -> None:
        """上游失败：写失败记录与请求日志，不扣费"""
        error_text = self._truncate(error.detail)
        self.db.add(self._failed_image(principal, params, resolved, error_text, elapsed_ms))
        self.db.add(
            self._request_log(principal, client, error.provider_status, elapsed_ms, error_message=error_text)
        )
        await self.db.commit()

    async def record_success(
        self,
        principal: Principal,
        client: ClientInfo,
        params: GenerationParams,
        resolved: ResolvedModel,
        outcome: GenerationOutcome,
        elapsed_ms: int,
    ) -> GenerationResult:
        """
        上游成功：扣费、写流水、写生成记录、更新计数、写请求日志，同一事务提交

        Raises:
            CreditError: 扣费时积分已被并发请求扣走；此时记为失败，不扣费
        """
        cost = resolved.credits_cost
        try:
            balances = await self.ledger.debit(principal.user_id, cost)
        except SettlementConflict as conflict:
            await self.db.rollback()
            logger.warning(f"Settlement conflict for user {principal.user_id}: {conflict}")
            await self._record_settlement_failure(principal, client, params, resolved, conflict, elapsed_ms)
            raise CreditError(required=conflict.required, available=conflict.available)

        try:
            width = params.width or DEFAULT_SIZE
            height = params.height or DEFAULT_SIZE
            image = Image(
                user_id=principal.user_id,
                api_key_id=principal.api_key_id,
                prompt=params.prompt,
                negative_prompt=params.negative_prompt,
                model_id=resolved.model_id,
                provider_id=resolved.provider_id,
                image_url=outcome.image_url,
                status=ImageStatus.COMPLETED.value,
                generation_time_ms=elapsed_ms,
                width=width,
                height=height,
                credits_used=cost,
                metadata_={
                    "steps": params.steps,
                    "seed": params.seed,
                    "cfg_scale": params.cfg_scale or DEFAULT_CFG_SCALE,
                    "num_images": params.num_images or DEFAULT_NUM_IMAGES,
                },
            )
            self.db.add(image)
            await self.db.flush()

            self.db.add(
                CreditTransaction(
                    user_id=principal.user_id,
                    amount=-cost,
                    type=CreditTransactionType.GENERATION.value,
                    reason=f"Image generation: {params.prompt[:50]}...",
                    related_image_id=image.id,
                )
            )

            now = utcnow()
            if principal.api_key_id is not None:
                await self.db.execute(
                    update(APIKey)
                    .where(APIKey.id == principal.api_key_id)
                    .values(
                        usage_count=APIKey.usage_count + 1,
                        last_used_at=now,
                        last_used_ip=client.ip_address,
                    )
                    .execution_options(synchronize_session=False)
                )

            if resolved.model_id is not None:
                await self.db.execute(
                    update(AIModel)
                    .where(AIModel.id == resolved.model_id)
                    .values(usage_count=AIModel.usage_count + 1)
                    .execution_options(synchronize_session=False)
                )

            self.db.add(self._request_log(principal, client, 200, elapsed_ms, image_id=image.id))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Generated image {image.id} for user {principal.user_id} "
            f"model={resolved.model_id} cost={cost} provider_ms={outcome.elapsed_ms}"
        )

        return GenerationResult(
            image_id=image.id,
            image_url=outcome.image_url,
            prompt=params.prompt,
            width=width,
            height=height,
            generation_time_ms=elapsed_ms,
            credits_used=cost,
            balances=balances,
            created_at=image.created_at,
        )

    async def _record_settlement_failure(
        self,
        principal: Principal,
        client: ClientInfo,
        params: GenerationParams,
        resolved: ResolvedModel,
        conflict: SettlementConflict,
        elapsed_ms: int,
    ) -> None:
        error_text = str(conflict)
        self.db.add(self._failed_image(principal, params, resolved, error_text, elapsed_ms))
        self.db.add(self._request_log(principal, client, 402, elapsed_ms, error_message=self._truncate(error_text)))
        await self.db.commit()
