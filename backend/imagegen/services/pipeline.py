"""图像生成请求管线

阶段依次执行，任何阶段失败都以 PipelineError 提前结束：

    维护开关 -> 参数校验 -> 认证 -> 访问控制 -> 限流 -> 每日配额 -> 模型解析
    -> 积分预检 -> 上游生成 -> 结果记录

只有结果记录阶段会修改积分等持久化记账数据，且只在生成有了明确结果之后执行。
"""

import time
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.core.errors import GenError, RequestValidationError
from imagegen.services.access_guard import AccessGuard
from imagegen.services.authenticator import RequestAuthenticator
from imagegen.services.context import ClientInfo, GenerationParams, GenerationResult
from imagegen.services.credit_ledger import CreditLedger
from imagegen.services.generation_invoker import GenerationInvoker
from imagegen.services.maintenance import check_maintenance
from imagegen.services.model_resolver import ModelResolver
from imagegen.services.outcome_recorder import OutcomeRecorder
from imagegen.services.quota import QuotaEnforcer
from imagegen.services.rate_cache import RateCache
from imagegen.services.rate_limiter import RateLimiter


class GenerationPipeline:
    """一次生成请求的准入与记账"""

    def __init__(
        self,
        db: AsyncSession,
        invoker: GenerationInvoker,
        rate_cache: Optional[RateCache] = None,
    ):
        self.db = db
        self.invoker = invoker
        self.authenticator = RequestAuthenticator(db)
        self.access_guard = AccessGuard(db)
        self.rate_limiter = RateLimiter(db, rate_cache)
        self.quota = QuotaEnforcer(db)
        self.model_resolver = ModelResolver(db)
        self.ledger = CreditLedger(db)
        self.recorder = OutcomeRecorder(db)

    async def run(
        self,
        params: GenerationParams,
        client: ClientInfo,
        api_key: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> GenerationResult:
        """
        执行管线

        Args:
            params: 生成参数
            client: 请求来源
            api_key: x-api-key header
            authorization: Authorization header

        Returns:
            GenerationResult

        Raises:
            PipelineError: 任一阶段失败
        """
        started = time.monotonic()

        await check_maintenance(self.db)

        if not params.prompt or not params.prompt.strip():
            raise RequestValidationError("Prompt is required")

        principal = await self.authenticator.authenticate(api_key, authorization, client)
        profile = await self.access_guard.check(principal, client)
        await self.rate_limiter.check(principal, client)
        await self.quota.check(principal.user_id, profile)

        resolved = await self.model_resolver.resolve(params.model_id)
        await self.ledger.precheck(principal.user_id, resolved.credits_cost)

        try:
            outcome = await self.invoker.generate(params, resolved)
        except GenError as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            await self.recorder.record_failure(principal, client, params, resolved, e, elapsed_ms)
            raise

        elapsed_ms = int((time.monotonic() - started) * 1000)
        return await self.recorder.record_success(principal, client, params, resolved, outcome, elapsed_ms)
