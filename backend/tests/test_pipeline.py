import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from imagegen.core.errors import (
    AccessError,
    CreditError,
    GenError,
    MaintenanceError,
    ModelError,
    QuotaError,
    RateLimitError,
    RequestValidationError,
)
from imagegen.core.timeutil import utcnow
from imagegen.models import (
    AIModel,
    APIKey,
    CreditTransaction,
    Image,
    RequestLog,
    UserCredits,
)
from imagegen.services.context import ClientInfo, GenerationParams
from imagegen.services.credit_ledger import CreditLedger
from imagegen.services.generation_invoker import GenerationInvoker
from imagegen.services.pipeline import GenerationPipeline
from imagegen.services.rate_cache import InMemoryRateCache
from tests.conftest import IMAGE_URL, session_token

CLIENT = ClientInfo(ip_address="203.0.113.50", user_agent="pytest")


@pytest.fixture
def pipeline(db, fake_provider):
    invoker = GenerationInvoker(transport=fake_provider.transport)
    return GenerationPipeline(db, invoker, InMemoryRateCache(capacity=100, ttl=60))


async def fetch_all(session_maker, model):
    async with session_maker() as session:
        return (await session.execute(select(model))).scalars().all()


async def fetch_credits(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(select(UserCredits).where(UserCredits.user_id == user_id))
        credits = result.scalar_one()
        return credits.daily_credits, credits.balance


async def test_success_debits_and_records_everything(pipeline, seed, session_maker, fake_provider):
    user_id = await seed.user(balance=10, daily_credits=3)
    plaintext, key = await seed.api_key(user_id)
    model = await seed.model(credits_cost=5)

    result = await pipeline.run(
        GenerationParams(prompt="a red fox", model_id=model.id, width=512),
        CLIENT,
        api_key=plaintext,
    )

    assert len(fake_provider.calls) == 1
    assert result.image_url == IMAGE_URL
    assert result.credits_used == 5
    assert (result.width, result.height) == (512, 1024)
    assert (result.balances.daily_credits, result.balances.balance) == (0, 8)
    assert await fetch_credits(session_maker, user_id) == (0, 8)

    images = await fetch_all(session_maker, Image)
    assert len(images) == 1
    image = images[0]
    assert image.id == result.image_id
    assert image.status == "completed"
    assert image.credits_used == 5
    assert image.model_id == model.id
    assert image.api_key_id == key.id
    assert image.metadata_["cfg_scale"] == 7
    assert image.metadata_["num_images"] == 1

    transactions = await fetch_all(session_maker, CreditTransaction)
    assert [(t.amount, t.type, t.related_image_id) for t in transactions] == [(-5, "generation", image.id)]
    assert transactions[0].reason == "Image generation: a red fox..."

    logs = await fetch_all(session_maker, RequestLog)
    assert [(log.status_code, log.image_id, log.api_key_id) for log in logs] == [(200, image.id, key.id)]

    (stored_key,) = await fetch_all(session_maker, APIKey)
    assert stored_key.usage_count == 1
    assert stored_key.last_used_ip == "203.0.113.50"
    assert stored_key.last_used_at is not None

    (stored_model,) = await fetch_all(session_maker, AIModel)
    assert stored_model.usage_count == 1


async def test_session_user_with_default_model(pipeline, seed, session_maker):
    user_id = await seed.user(balance=0, daily_credits=2)

    result = await pipeline.run(
        GenerationParams(prompt="a boat"),
        CLIENT,
        authorization=f"Bearer {session_token(user_id)}",
    )

    assert result.credits_used == 1
    assert (result.balances.daily_credits, result.balances.balance) == (1, 0)
    (image,) = await fetch_all(session_maker, Image)
    assert image.model_id is None
    assert image.api_key_id is None


async def test_provider_failure_does_not_debit(pipeline, seed, session_maker, fake_provider):
    user_id = await seed.user(balance=10, daily_credits=3)
    plaintext, key = await seed.api_key(user_id)
    model = await seed.model(credits_cost=5)
    fake_provider.respond(500, "upstream exploded")

    with pytest.raises(GenError) as exc_info:
        await pipeline.run(GenerationParams(prompt="a red fox", model_id=model.id), CLIENT, api_key=plaintext)

    assert exc_info.value.status_code == 500
    assert await fetch_credits(session_maker, user_id) == (3, 10)
    assert await fetch_all(session_maker, CreditTransaction) == []

    (image,) = await fetch_all(session_maker, Image)
    assert image.status == "failed"
    assert image.credits_used == 0
    assert image.error == "upstream exploded"
    assert image.model_id == model.id

    (log,) = await fetch_all(session_maker, RequestLog)
    assert log.status_code == 500
    assert log.image_id is None
    assert log.error_message == "upstream exploded"

    # 失败不计入使用次数
    (stored_model,) = await fetch_all(session_maker, AIModel)
    assert stored_model.usage_count == 0
    (stored_key,) = await fetch_all(session_maker, APIKey)
    assert stored_key.usage_count == 0


async def test_long_provider_error_is_truncated(pipeline, seed, session_maker, fake_provider):
    user_id = await seed.user()
    fake_provider.respond(400, "x" * 2000)

    with pytest.raises(GenError):
        await pipeline.run(GenerationParams(prompt="p"), CLIENT, authorization=f"Bearer {session_token(user_id)}")

    (image,) = await fetch_all(session_maker, Image)
    assert len(image.error) == 500


async def test_insufficient_credits_never_calls_provider(pipeline, seed, session_maker, fake_provider):
    user_id = await seed.user(balance=2, daily_credits=0)
    model = await seed.model(credits_cost=5)

    with pytest.raises(CreditError) as exc_info:
        await pipeline.run(
            GenerationParams(prompt="a red fox", model_id=model.id),
            CLIENT,
            authorization=f"Bearer {session_token(user_id)}",
        )

    assert (exc_info.value.required, exc_info.value.available) == (5, 2)
    assert fake_provider.calls == []
    assert await fetch_all(session_maker, Image) == []
    assert await fetch_all(session_maker, RequestLog) == []


async def test_banned_user_leaves_no_image(pipeline, seed, session_maker, fake_provider):
    user_id = await seed.user(is_banned=True, ban_reason="fraud")

    with pytest.raises(AccessError):
        await pipeline.run(GenerationParams(prompt="p"), CLIENT, authorization=f"Bearer {session_token(user_id)}")

    assert fake_provider.calls == []
    assert await fetch_all(session_maker, Image) == []


async def test_cooldown_fallback_is_recorded_on_image(pipeline, seed, session_maker):
    user_id = await seed.user(balance=10)
    fallback = await seed.model(credits_cost=2)
    primary = await seed.model(
        credits_cost=4,
        cooldown_until=utcnow() + timedelta(minutes=5),
        fallback_model_id=fallback.id,
    )

    result = await pipeline.run(
        GenerationParams(prompt="p", model_id=primary.id),
        CLIENT,
        authorization=f"Bearer {session_token(user_id)}",
    )

    assert result.credits_used == 2
    (image,) = await fetch_all(session_maker, Image)
    assert image.model_id == fallback.id
    models = {m.id: m.usage_count for m in await fetch_all(session_maker, AIModel)}
    assert models == {fallback.id: 1, primary.id: 0}


async def test_maintenance_short_circuits_everything(pipeline, seed, fake_provider):
    await seed.setting("maintenance_mode", True)
    await seed.setting("maintenance_message", "Upgrading, back at 14:00")

    with pytest.raises(MaintenanceError) as exc_info:
        await pipeline.run(GenerationParams(prompt=""), CLIENT)

    assert exc_info.value.status_code == 503
    assert exc_info.value.message == "Upgrading, back at 14:00"
    assert fake_provider.calls == []


@pytest.mark.parametrize("prompt", ["", "   ", None])
async def test_blank_prompt_is_rejected_before_auth(pipeline, prompt):
    with pytest.raises(RequestValidationError) as exc_info:
        await pipeline.run(GenerationParams(prompt=prompt), CLIENT)

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Prompt is required"


async def test_daily_image_quota(pipeline, seed, fake_provider):
    user_id = await seed.user(max_images_per_day=1)
    token = f"Bearer {session_token(user_id)}"

    await pipeline.run(GenerationParams(prompt="first"), CLIENT, authorization=token)
    with pytest.raises(QuotaError) as exc_info:
        await pipeline.run(GenerationParams(prompt="second"), CLIENT, authorization=token)

    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after >= 1
    assert len(fake_provider.calls) == 1


async def test_unknown_model_is_rejected(pipeline, seed, fake_provider):
    user_id = await seed.user()

    with pytest.raises(ModelError):
        await pipeline.run(
            GenerationParams(prompt="p", model_id=uuid.uuid4()),
            CLIENT,
            authorization=f"Bearer {session_token(user_id)}",
        )

    assert fake_provider.calls == []


async def test_settlement_conflict_records_failure(pipeline, seed, session_maker, monkeypatch):
    user_id = await seed.user(balance=1, daily_credits=0)
    model = await seed.model(credits_cost=3)

    # 模拟预检之后积分被并发请求扣走
    async def passing_precheck(self, user_id, cost):
        return None

    monkeypatch.setattr(CreditLedger, "precheck", passing_precheck)

    with pytest.raises(CreditError) as exc_info:
        await pipeline.run(
            GenerationParams(prompt="p", model_id=model.id),
            CLIENT,
            authorization=f"Bearer {session_token(user_id)}",
        )

    assert (exc_info.value.required, exc_info.value.available) == (3, 1)
    assert await fetch_credits(session_maker, user_id) == (0, 1)
    assert await fetch_all(session_maker, CreditTransaction) == []

    (image,) = await fetch_all(session_maker, Image)
    assert image.status == "failed"
    assert image.credits_used == 0
    (log,) = await fetch_all(session_maker, RequestLog)
    assert log.status_code == 402


async def test_balances_never_negative_across_requests(pipeline, seed, session_maker):
    user_id = await seed.user(balance=2, daily_credits=1)
    token = f"Bearer {session_token(user_id)}"

    for _ in range(3):
        await pipeline.run(GenerationParams(prompt="p"), CLIENT, authorization=token)
    with pytest.raises(CreditError):
        await pipeline.run(GenerationParams(prompt="p"), CLIENT, authorization=token)

    assert await fetch_credits(session_maker, user_id) == (0, 0)
    async with session_maker() as session:
        total = await session.scalar(select(func.sum(CreditTransaction.amount)))
    assert total == -3


async def test_api_key_without_override_uses_profile_rpm(pipeline, seed, fake_provider):
    user_id = await seed.user(custom_rpm=1)
    plaintext, _ = await seed.api_key(user_id)
    await seed.request_logs(user_id, 1)

    with pytest.raises(RateLimitError) as exc_info:
        await pipeline.run(GenerationParams(prompt="p"), CLIENT, api_key=plaintext)

    assert exc_info.value.message == "Rate limit exceeded (requests per minute)"
    assert fake_provider.calls == []


async def test_api_key_override_beats_profile_rpm(pipeline, seed, fake_provider):
    user_id = await seed.user(custom_rpm=1)
    plaintext, _ = await seed.api_key(user_id, custom_rpm=5)
    await seed.request_logs(user_id, 1)

    result = await pipeline.run(GenerationParams(prompt="p"), CLIENT, api_key=plaintext)

    assert result.credits_used == 1
    assert len(fake_provider.calls) == 1
