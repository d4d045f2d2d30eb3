# backend/tests/conftest.py
import base64
import os
import uuid
from datetime import timedelta
from typing import Any, List, Optional, Tuple

# 必须在导入 imagegen 之前设置，模块级 settings 会读取这些值
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-0123456789abcdef-0123"
os.environ["ENCRYPTION_KEY"] = base64.b64encode(b"k" * 32).decode("ascii")
os.environ["AI_GATEWAY_URL"] = "https://gateway.test/v1/chat/completions"
os.environ["AI_GATEWAY_API_KEY"] = "test-gateway-key"
os.environ["RATE_CACHE_BACKEND"] = "memory"
os.environ["LOG_LEVEL"] = "WARNING"

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import update  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import imagegen.models  # noqa: E402,F401
from imagegen.core.config import get_settings  # noqa: E402
from imagegen.core.database import Base  # noqa: E402
from imagegen.core.security import api_key_prefix, generate_api_key, hash_api_key  # noqa: E402
from imagegen.core.timeutil import utcnow  # noqa: E402
from imagegen.models import (  # noqa: E402
    AIModel,
    APIKey,
    IPBlocklist,
    Profile,
    Provider,
    RequestLog,
    SystemSetting,
    UserCredits,
)

IMAGE_URL = "https://cdn.test/generated.png"
IMAGE_RESPONSE = {
    "choices": [
        {"message": {"role": "assistant", "images": [{"type": "image_url", "image_url": {"url": IMAGE_URL}}]}}
    ]
}


def session_token(user_id: uuid.UUID, expires_in: int = 3600, **claims: Any) -> str:
    """签发测试用会话令牌"""
    settings = get_settings()
    payload = {"sub": str(user_id), "exp": utcnow() + timedelta(seconds=expires_in), **claims}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


class FakeProvider:
    """可编程的上游：记录每次调用，按配置返回响应或抛出网络异常"""

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.status_code = 200
        self.body: Any = IMAGE_RESPONSE
        self.headers: dict = {}
        self.error: Optional[Exception] = None

    def respond(self, status_code: int = 200, body: Any = None, headers: Optional[dict] = None) -> "FakeProvider":
        self.status_code = status_code
        self.body = IMAGE_RESPONSE if body is None and status_code == 200 else body
        self.headers = headers or {}
        return self

    def fail(self, error: Exception) -> "FakeProvider":
        self.error = error
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status_code, json=self.body, headers=self.headers)
        return httpx.Response(self.status_code, text=self.body or "", headers=self.headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class Seeder:
    """测试数据构造"""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def add(self, *objects):
        async with self.session_maker() as session:
            session.add_all(objects)
            await session.commit()
        return objects[0] if objects else None

    async def user(self, balance: float = 10, daily_credits: float = 0, **profile_fields) -> uuid.UUID:
        user_id = uuid.uuid4()
        await self.add(
            Profile(user_id=user_id, **profile_fields),
            UserCredits(user_id=user_id, balance=balance, daily_credits=daily_credits),
        )
        return user_id

    async def api_key(self, user_id: uuid.UUID, **fields) -> Tuple[str, APIKey]:
        plaintext = generate_api_key()
        fields.setdefault("name", "test key")
        record = await self.add(
            APIKey(
                user_id=user_id,
                key_prefix=api_key_prefix(plaintext),
                key_hash=hash_api_key(plaintext),
                **fields,
            )
        )
        return plaintext, record

    async def provider(self, **fields) -> Provider:
        fields.setdefault("name", f"provider-{uuid.uuid4().hex[:8]}")
        fields.setdefault("display_name", "Test Provider")
        return await self.add(Provider(**fields))

    async def model(self, **fields) -> AIModel:
        fields.setdefault("name", "Test Model")
        fields.setdefault("model_id", f"test/model-{uuid.uuid4().hex[:8]}")
        fields.setdefault("credits_cost", 1)
        return await self.add(AIModel(**fields))

    async def update_model(self, model_id: uuid.UUID, **values) -> None:
        async with self.session_maker() as session:
            await session.execute(update(AIModel).where(AIModel.id == model_id).values(**values))
            await session.commit()

    async def setting(self, key: str, value: Any) -> None:
        await self.add(SystemSetting(key=key, value=value))

    async def block(self, ip_address: str, **fields) -> IPBlocklist:
        return await self.add(IPBlocklist(ip_address=ip_address, **fields))

    async def request_logs(self, user_id: uuid.UUID, count: int, created_at=None, status_code: int = 200) -> None:
        created_at = created_at or utcnow()
        await self.add(
            *[
                RequestLog(
                    user_id=user_id,
                    endpoint="/generate-image",
                    method="POST",
                    status_code=status_code,
                    created_at=created_at,
                )
                for _ in range(count)
            ]
        )


@pytest.fixture
async def engine():
    """每个测试一个独立的内存数据库"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def seed(session_maker):
    return Seeder(session_maker)


@pytest.fixture
def fake_provider():
    return FakeProvider()
