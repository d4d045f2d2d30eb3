"""生成管线错误分类

每个阶段失败时抛出一个 PipelineError 子类，由 main.py 中的异常处理器
统一转换为 {"error": message, ...} 的 JSON 响应。状态码需与现有客户端保持一致。
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple


class PipelineError(Exception):
    """管线错误基类"""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}
        self.retry_after = retry_after

    def to_content(self) -> Dict[str, Any]:
        """响应体"""
        content: Dict[str, Any] = {"error": self.message}
        content.update(self.extra)
        if self.retry_after is not None:
            content["retry_after"] = self.retry_after
        return content


class MaintenanceError(PipelineError):
    """系统维护中"""
    status_code = 503


class RequestValidationError(PipelineError):
    """请求参数错误"""
    status_code = 400


# ============================================================================
# 认证
# ============================================================================

class AuthErrorKind(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    INVALID_SESSION = "invalid_session"
    KEY_INACTIVE = "key_inactive"
    KEY_EXPIRED = "key_expired"


_AUTH_STATUS = {
    AuthErrorKind.MISSING_CREDENTIAL: 401,
    AuthErrorKind.INVALID_CREDENTIAL: 401,
    AuthErrorKind.INVALID_SESSION: 401,
    AuthErrorKind.KEY_INACTIVE: 403,
    AuthErrorKind.KEY_EXPIRED: 403,
}


class AuthError(PipelineError):
    """认证失败"""

    def __init__(self, kind: AuthErrorKind, message: str):
        super().__init__(message, status_code=_AUTH_STATUS[kind])
        self.kind = kind


# ============================================================================
# 访问控制
# ============================================================================

class AccessErrorKind(str, Enum):
    BANNED = "banned"
    BLOCKED = "blocked"


class AccessError(PipelineError):
    """账号封禁或 IP 被拦截"""
    status_code = 403

    def __init__(self, kind: AccessErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


# ============================================================================
# 限流与配额
# ============================================================================

class RateLimitKind(str, Enum):
    PER_MINUTE = "per_minute"
    PER_DAY = "per_day"


class RateLimitError(PipelineError):
    """RPM / RPD 超限"""
    status_code = 429

    def __init__(self, kind: RateLimitKind, message: str, retry_after: Optional[int] = None):
        super().__init__(message, retry_after=retry_after)
        self.kind = kind


class QuotaError(PipelineError):
    """每日生成图片数超限"""
    status_code = 429

    def __init__(self, message: str = "Daily image generation limit reached", retry_after: Optional[int] = None):
        super().__init__(message, retry_after=retry_after)
        self.kind = "daily_images_exceeded"


# ============================================================================
# 模型
# ============================================================================

class ModelErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    SOFT_DISABLED = "soft_disabled"
    COOLDOWN = "cooldown"


_MODEL_STATUS = {
    ModelErrorKind.NOT_FOUND: 400,
    ModelErrorKind.UNAVAILABLE: 400,
    ModelErrorKind.SOFT_DISABLED: 400,
    ModelErrorKind.COOLDOWN: 503,
}


class ModelError(PipelineError):
    """模型不可用（需要管理员处理）"""

    def __init__(self, kind: ModelErrorKind, message: str):
        super().__init__(message, status_code=_MODEL_STATUS[kind])
        self.kind = kind


# ============================================================================
# 积分
# ============================================================================

class CreditError(PipelineError):
    """积分不足，响应体必须原样带上 required / available"""
    status_code = 402

    def __init__(self, required: float, available: float):
        super().__init__(
            "Insufficient credits",
            extra={"required": required, "available": available},
        )
        self.kind = "insufficient"
        self.required = required
        self.available = available


# ============================================================================
# 生成（上游 Provider）
# ============================================================================

class GenErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    PROVIDER_AUTH = "provider_auth"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    PROVIDER_QUOTA_EXCEEDED = "provider_quota_exceeded"
    PROVIDER_SERVER_ERROR = "provider_server_error"
    PROVIDER_GENERIC = "provider_generic"
    EMPTY_RESULT = "empty_result"


# 上游错误 -> (客户端状态码, 客户端消息)，唯一映射点
GEN_ERROR_RESPONSES: Dict[GenErrorKind, Tuple[int, str]] = {
    GenErrorKind.UNREACHABLE: (500, "Image generation failed"),
    GenErrorKind.PROVIDER_AUTH: (500, "Image generation failed"),
    GenErrorKind.PROVIDER_RATE_LIMITED: (429, "Rate limit exceeded, please try again later"),
    GenErrorKind.PROVIDER_QUOTA_EXCEEDED: (503, "Service quota exceeded"),
    GenErrorKind.PROVIDER_SERVER_ERROR: (500, "Image generation failed"),
    GenErrorKind.PROVIDER_GENERIC: (500, "Image generation failed"),
    GenErrorKind.EMPTY_RESULT: (500, "No image generated"),
}


def classify_provider_status(status_code: int, body: str = "") -> GenErrorKind:
    """把上游非 2xx 状态码归类"""
    if status_code == 402:
        return GenErrorKind.PROVIDER_QUOTA_EXCEEDED
    if status_code == 403 and "quota" in body.lower():
        return GenErrorKind.PROVIDER_QUOTA_EXCEEDED
    if status_code in (401, 403):
        return GenErrorKind.PROVIDER_AUTH
    if status_code == 429:
        return GenErrorKind.PROVIDER_RATE_LIMITED
    if status_code >= 500:
        return GenErrorKind.PROVIDER_SERVER_ERROR
    return GenErrorKind.PROVIDER_GENERIC


class GenError(PipelineError):
    """上游生成失败

    detail 是写入 images.error / request_logs.error_message 的内部说明，
    不直接返回给调用方。
    """

    def __init__(
        self,
        kind: GenErrorKind,
        detail: str = "",
        provider_status: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        status_code, message = GEN_ERROR_RESPONSES[kind]
        super().__init__(message, status_code=status_code, retry_after=retry_after)
        self.kind = kind
        self.detail = detail or message
        self.provider_status = provider_status


# ============================================================================
# API Key 管理
# ============================================================================

class APIKeyError(PipelineError):
    """API Key 创建/吊销失败"""
    status_code = 400
