import time
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from imagegen.core import deps
from imagegen.core.errors import RateLimitError, RateLimitKind
from imagegen.core.timeutil import utcnow
from imagegen.models import SecurityEvent
from imagegen.services.context import ClientInfo, Principal
from imagegen.services.rate_cache import InMemoryRateCache, RedisRateCache, memory_rate_cache
from imagegen.services.rate_limiter import RateLimiter

NOW = datetime(2026, 10, 17, 12, 0, 0)
CLIENT = ClientInfo(ip_address="203.0.113.7", user_agent="pytest")


async def test_below_limit_is_admitted(db, seed):
    user_id = await seed.user()
    await seed.request_logs(user_id, 59, created_at=NOW - timedelta(seconds=10))

    limits = await RateLimiter(db).check(Principal(user_id=user_id), CLIENT, now=NOW)

    assert limits.rpm == 60
    assert limits.rpd == 1000


async def test_rejects_at_rpm_boundary(db, seed):
    user_id = await seed.user()
    await seed.request_logs(user_id, 60, created_at=NOW - timedelta(seconds=10))

    with pytest.raises(RateLimitError) as exc_info:
        await RateLimiter(db).check(Principal(user_id=user_id), CLIENT, now=NOW)

    error = exc_info.value
    assert error.kind == RateLimitKind.PER_MINUTE
    assert error.status_code == 429
    assert error.message == "Rate limit exceeded (requests per minute)"
    # 最早一条在 10 秒前，窗口在 50 秒后滑出
    assert error.retry_after == 50

    events = (await db.execute(select(SecurityEvent))).scalars().all()
    assert [e.event_type for e in events] == ["rate_limit"]
    assert events[0].user_id == user_id


async def test_logs_outside_minute_window_are_ignored(db, seed):
    user_id = await seed.user()
    await seed.request_logs(user_id, 60, created_at=NOW - timedelta(seconds=61))

    await RateLimiter(db).check(Principal(user_id=user_id), CLIENT, now=NOW)


async def test_rejects_at_rpd_with_retry_until_midnight(db, seed):
    user_id = await seed.user()
    await seed.request_logs(user_id, 5, created_at=NOW - timedelta(hours=2))
    # 昨天的日志不计入
    await seed.request_logs(user_id, 5, created_at=NOW - timedelta(hours=13))

    with pytest.raises(RateLimitError) as exc_info:
        await RateLimiter(db).check(Principal(user_id=user_id, custom_rpd=5), CLIENT, now=NOW)

    assert exc_info.value.kind == RateLimitKind.PER_DAY
    assert exc_info.value.retry_after == 12 * 3600


async def test_identity_override_beats_system_default(db, seed):
    user_id = await seed.user()
    await seed.setting("default_rpm", 5)
    await seed.request_logs(user_id, 5, created_at=NOW - timedelta(seconds=5))
    limiter = RateLimiter(db)

    limits = await limiter.check(Principal(user_id=user_id, custom_rpm=10), CLIENT, now=NOW)
    assert limits.rpm == 10

    with pytest.raises(RateLimitError):
        await limiter.check(Principal(user_id=user_id), CLIENT, now=NOW)


async def test_other_users_do_not_count(db, seed):
    user_id = await seed.user()
    other_id = await seed.user()
    await seed.request_logs(other_id, 60, created_at=NOW - timedelta(seconds=5))

    await RateLimiter(db).check(Principal(user_id=user_id), CLIENT, now=NOW)


async def test_rejection_is_cached_per_limit(db, seed):
    user_id = await seed.user()
    now = utcnow()
    await seed.request_logs(user_id, 3, created_at=now - timedelta(seconds=5))
    cache = InMemoryRateCache(capacity=100, ttl=60)
    limiter = RateLimiter(db, cache)

    with pytest.raises(RateLimitError):
        await limiter.check(Principal(user_id=user_id, custom_rpm=3), CLIENT, now=now)

    assert await cache.get(f"{user_id}:per_minute:3") is not None

    # 限额提高后旧的拒绝记录不再生效
    limits = await limiter.check(Principal(user_id=user_id, custom_rpm=10), CLIENT, now=now)
    assert limits.rpm == 10


async def test_cache_hit_still_records_security_event(db, seed, monkeypatch):
    user_id = await seed.user()
    await seed.request_logs(user_id, 3, created_at=utcnow() - timedelta(seconds=5))
    cache = InMemoryRateCache(capacity=100, ttl=60)
    limiter = RateLimiter(db, cache)
    principal = Principal(user_id=user_id, custom_rpm=3)

    with pytest.raises(RateLimitError):
        await limiter.check(principal, CLIENT)

    # 命中缓存后不再查询计数
    async def fail_count(self, principal, now):
        raise AssertionError("count_requests should be skipped on a cache hit")

    monkeypatch.setattr(RateLimiter, "count_requests", fail_count)

    for _ in range(2):
        with pytest.raises(RateLimitError) as exc_info:
            await limiter.check(principal, CLIENT)
        assert 1 <= exc_info.value.retry_after <= 60

    events = (await db.execute(select(SecurityEvent))).scalars().all()
    assert len(events) == 3
    assert {event.details["limit"] for event in events} == {3}
    assert {event.user_id for event in events} == {user_id}


class TestInMemoryRateCache:
    async def test_expired_entry_is_dropped(self):
        cache = InMemoryRateCache(capacity=10, ttl=60)
        await cache.set("k", time.time() - 1)

        assert await cache.get("k") is None

    async def test_ttl_caps_entry_lifetime(self):
        cache = InMemoryRateCache(capacity=10, ttl=0)
        await cache.set("k", time.time() + 3600)

        assert await cache.get("k") is None

    async def test_evicts_least_recently_used(self):
        cache = InMemoryRateCache(capacity=2, ttl=60)
        until = time.time() + 30
        await cache.set("a", until)
        await cache.set("b", until)
        await cache.get("a")
        await cache.set("c", until)

        assert await cache.get("a") == until
        assert await cache.get("b") is None
        assert await cache.get("c") == until

    async def test_cleanup_removes_expired(self):
        cache = InMemoryRateCache(capacity=10, ttl=60)
        await cache.set("old", time.time() - 1)
        await cache.set("live", time.time() + 30)

        await cache.cleanup()

        assert list(cache.entries) == ["live"]


def test_cache_key_includes_user_kind_and_limit():
    principal = Principal(user_id=uuid.UUID(int=1))

    key = RateLimiter(None)._cache_key(principal, RateLimitKind.PER_DAY, 1000)

    assert key == f"{principal.user_id}:per_day:1000"


@pytest.mark.parametrize("backend", ["memory", "redis"])
async def test_rate_cache_dependency_follows_backend(monkeypatch, backend):
    client = object()

    async def fake_get_redis():
        return client

    monkeypatch.setattr(deps, "get_redis", fake_get_redis)
    monkeypatch.setattr(deps, "settings", deps.settings.model_copy(update={"rate_cache_backend": backend}))

    cache = await deps.get_rate_cache()

    if backend == "redis":
        assert isinstance(cache, RedisRateCache)
        assert cache.redis is client
    else:
        assert cache is memory_rate_cache
