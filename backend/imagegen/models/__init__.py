"""数据模型模块"""

from imagegen.models.account import Profile, UserCredits, CreditTransaction, CreditTransactionType
from imagegen.models.catalog import Provider, ProviderStatus, AIModel, ModelStatus
from imagegen.models.api_key import APIKey, APIKeyStatus
from imagegen.models.image import Image, ImageStatus
from imagegen.models.logs import (
    RequestLog,
    SecurityEvent,
    SecurityEventType,
    Severity,
    IPBlocklist,
    SystemSetting,
)

__all__ = [
    "Profile",
    "UserCredits",
    "CreditTransaction",
    "CreditTransactionType",
    "Provider",
    "ProviderStatus",
    "AIModel",
    "ModelStatus",
    "APIKey",
    "APIKeyStatus",
    "Image",
    "ImageStatus",
    "RequestLog",
    "SecurityEvent",
    "SecurityEventType",
    "Severity",
    "IPBlocklist",
    "SystemSetting",
]
