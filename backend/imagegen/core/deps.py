"""FastAPI 依赖函数"""

from typing import Optional
from uuid import UUID

from fastapi import Header, Request

from imagegen.core.config import get_settings
from imagegen.core.errors import AuthError, AuthErrorKind
from imagegen.core.redis import get_redis
from imagegen.core.security import InvalidSessionToken, verify_session_token
from imagegen.services.access_guard import client_ip_from_headers
from imagegen.services.authenticator import parse_bearer
from imagegen.services.context import ClientInfo
from imagegen.services.generation_invoker import GenerationInvoker
from imagegen.services.rate_cache import RateCache, RedisRateCache, memory_rate_cache

settings = get_settings()


def get_client_info(request: Request) -> ClientInfo:
    """请求来源 IP 与 User-Agent"""
    return ClientInfo(
        ip_address=client_ip_from_headers(
            request.headers.get("x-forwarded-for"),
            request.headers.get("cf-connecting-ip"),
            request.client.host if request.client else None,
        ),
        user_agent=request.headers.get("user-agent"),
    )


def get_invoker() -> GenerationInvoker:
    """上游调用器（测试中通过 dependency_overrides 注入 MockTransport 版本）"""
    return GenerationInvoker()


async def get_rate_cache() -> RateCache:
    """按配置选择限流缓存后端"""
    if settings.rate_cache_backend == "redis":
        return RedisRateCache(await get_redis(), ttl=settings.rate_cache_ttl_seconds)
    return memory_rate_cache


async def get_session_user_id(authorization: Optional[str] = Header(None)) -> UUID:
    """
    获取当前会话用户（必须登录，不接受 API Key）

    Raises:
        AuthError: 缺少或无效的会话令牌
    """
    if not authorization:
        raise AuthError(AuthErrorKind.MISSING_CREDENTIAL, "Authentication required")

    token = parse_bearer(authorization)
    if token is None:
        raise AuthError(AuthErrorKind.INVALID_SESSION, "Invalid session")

    try:
        return verify_session_token(token)
    except InvalidSessionToken:
        raise AuthError(AuthErrorKind.INVALID_SESSION, "Invalid session")
