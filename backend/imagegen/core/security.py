"""安全相关工具 - API Key 哈希、Provider 凭证加密、会话令牌校验"""

import base64
import hashlib
import logging
import os
import secrets
from typing import Optional
from uuid import UUID

import jwt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from imagegen.core.config import get_settings

logger = logging.getLogger(__name__)

API_KEY_PREFIX_LENGTH = 8


# ============================================================================
# 1. 调用方 API Key
# ============================================================================

def generate_api_key() -> str:
    """生成新的 API Key：sk- + 64 位十六进制"""
    return "sk-" + secrets.token_hex(32)


def hash_api_key(key: str) -> str:
    """API Key 单向哈希（SHA-256 hex），库中只存这个值"""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def api_key_prefix(key: str) -> str:
    """可见前缀，用于列表展示和查找"""
    return key[:API_KEY_PREFIX_LENGTH]


def mask_api_key(key: Optional[str]) -> str:
    """遮罩 Key，只保留后 4 位"""
    if not key or len(key) < 4:
        return "••••••••"
    return "••••••••" + key[-4:]


# ============================================================================
# 2. Provider 凭证加密（AES-256-GCM）
# ============================================================================

class ProviderKeyCipher:
    """
    Provider 凭证加解密

    密文格式: base64(12 字节 IV + 密文 + GCM tag)
    """

    IV_LENGTH = 12

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Args:
            encryption_key: base64 编码的 32 字节密钥，None 时读取配置
        """
        if encryption_key is None:
            encryption_key = get_settings().encryption_key

        if not encryption_key:
            raise ValueError("Encryption not configured")

        try:
            key_bytes = base64.b64decode(encryption_key)
            self.aesgcm = AESGCM(key_bytes)
        except Exception as e:
            logger.error(f"Failed to initialize provider key cipher: {e}")
            raise ValueError("Invalid encryption key")

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(self.IV_LENGTH)
        ciphertext = self.aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        combined = base64.b64decode(token)
        iv, ciphertext = combined[: self.IV_LENGTH], combined[self.IV_LENGTH:]
        return self.aesgcm.decrypt(iv, ciphertext, None).decode("utf-8")

    @staticmethod
    def generate_key() -> str:
        """生成新的 base64 AES-256 密钥"""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


# ============================================================================
# 3. 会话令牌
# ============================================================================

class InvalidSessionToken(Exception):
    """会话令牌无效"""


def verify_session_token(token: str) -> UUID:
    """
    校验身份服务签发的会话 JWT，返回用户 ID

    Raises:
        InvalidSessionToken: 签名、过期、受众或 sub 不合法
    """
    settings = get_settings()
    options = {"verify_aud": settings.jwt_audience is not None}
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise InvalidSessionToken("Token has expired")
    except jwt.PyJWTError as e:
        raise InvalidSessionToken(str(e))

    subject = payload.get("sub")
    if not subject:
        raise InvalidSessionToken("Invalid token payload")

    try:
        return UUID(subject)
    except ValueError:
        raise InvalidSessionToken("Invalid subject")
