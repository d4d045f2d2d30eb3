"""FastAPI 应用入口"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError as BodyValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from imagegen.api.api_keys import router as api_keys_router
from imagegen.api.generation import router as generation_router
from imagegen.core.config import get_settings
from imagegen.core.database import close_db
from imagegen.core.errors import PipelineError
from imagegen.core.redis import close_redis
from imagegen.middleware.request_size import RequestSizeLimitMiddleware
from imagegen.services.rate_cache import cleanup_task

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    # 启动时 - 内存限流缓存需要定期清理，Redis 依赖自身过期
    cleanup_task_handle = None
    if settings.rate_cache_backend == "memory":
        cleanup_task_handle = asyncio.create_task(cleanup_task())

    yield

    # 关闭时
    if cleanup_task_handle is not None:
        cleanup_task_handle.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task_handle
    await close_db()
    await close_redis()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="图像生成 API",
    lifespan=lifespan,
)

# 1. 请求大小限制
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_size=settings.max_request_size,
)

# 2. CORS 中间件（必须在最外层）
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-api-key"],
)


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError):
    """管线错误 -> {"error": ...}"""
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_content(), headers=headers)


@app.exception_handler(BodyValidationError)
async def body_validation_exception_handler(request: Request, exc: BodyValidationError):
    """请求体格式错误统一返回 400"""
    return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """未预期的异常"""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": str(exc) or "Unknown error"})


# 注册路由
app.include_router(generation_router)  # 图像生成
app.include_router(api_keys_router)  # API Key 管理


@app.get("/health")
async def health_check() -> dict:
    """健康检查端点"""
    return {"status": "healthy", "version": settings.app_version}
