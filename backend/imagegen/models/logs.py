"""请求日志、安全事件、IP 黑名单、系统设置"""

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text, Uuid

from imagegen.core.database import Base
from imagegen.core.timeutil import utcnow


class RequestLog(Base):
    """请求日志 - 只追加；限流按这张表计数"""
    __tablename__ = "request_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=True)
    api_key_id = Column(Uuid, nullable=True)
    image_id = Column(Uuid, nullable=True)
    endpoint = Column(String(200), nullable=False)
    method = Column(String(10), nullable=False)
    status_code = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_request_logs_user_created", "user_id", "created_at"),
    )


class SecurityEventType(str, Enum):
    LOGIN_FAILED = "login_failed"
    RATE_LIMIT = "rate_limit"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    API_ABUSE = "api_abuse"
    BLOCKED_IP = "blocked_ip"
    AUTO_BAN = "auto_ban"
    PROMPT_FILTER = "prompt_filter"
    VPN_DETECTED = "vpn_detected"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEvent(Base):
    """安全事件 - 只追加"""
    __tablename__ = "security_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type = Column(String(30), nullable=False)
    severity = Column(String(10), default=Severity.LOW.value, nullable=False)
    user_id = Column(Uuid, nullable=True)
    api_key_id = Column(Uuid, nullable=True)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    details = Column(JSON, default=dict)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class IPBlocklist(Base):
    """IP 黑名单 - 管线只读"""
    __tablename__ = "ip_blocklist"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ip_address = Column(String(64), unique=True, nullable=False)
    cidr_range = Column(String(64), nullable=True)
    reason = Column(String(20), default="manual", nullable=False)
    notes = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class SystemSetting(Base):
    """系统设置键值表（maintenance_mode、default_rpm 等）"""
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
