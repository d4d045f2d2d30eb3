from datetime import timedelta

import pytest
from sqlalchemy import select

from imagegen.core.errors import AccessError, AccessErrorKind
from imagegen.core.timeutil import utcnow
from imagegen.models import SecurityEvent
from imagegen.services.access_guard import AccessGuard, client_ip_from_headers, is_ip_in_cidr
from imagegen.services.context import ClientInfo, Principal

CLIENT = ClientInfo(ip_address="192.0.2.10", user_agent="pytest")


async def test_clean_account_passes(db, seed):
    user_id = await seed.user(max_images_per_day=20)

    profile = await AccessGuard(db).check(Principal(user_id=user_id), CLIENT)

    assert profile.max_images_per_day == 20


async def test_banned_account_with_reason(db, seed):
    user_id = await seed.user(is_banned=True, ban_reason="spam")

    with pytest.raises(AccessError) as exc_info:
        await AccessGuard(db).check(Principal(user_id=user_id), CLIENT)

    assert exc_info.value.kind == AccessErrorKind.BANNED
    assert exc_info.value.status_code == 403
    assert exc_info.value.message == "Account banned: spam"


async def test_banned_account_without_reason(db, seed):
    user_id = await seed.user(is_banned=True)

    with pytest.raises(AccessError) as exc_info:
        await AccessGuard(db).check(Principal(user_id=user_id), CLIENT)

    assert exc_info.value.message == "Account banned: Contact support"


async def test_profile_overrides_fill_principal(db, seed):
    user_id = await seed.user(custom_rpm=7, custom_rpd=70)
    principal = Principal(user_id=user_id, custom_rpm=3)

    await AccessGuard(db).check(principal, CLIENT)

    # API Key 上的覆盖值优先
    assert principal.custom_rpm == 3
    assert principal.custom_rpd == 70


async def test_blocked_ip_records_event(db, seed):
    user_id = await seed.user()
    await seed.block("192.0.2.10", reason="abuse")

    with pytest.raises(AccessError) as exc_info:
        await AccessGuard(db).check(Principal(user_id=user_id), CLIENT)

    assert exc_info.value.kind == AccessErrorKind.BLOCKED
    assert exc_info.value.message == "Access denied"

    events = (await db.execute(select(SecurityEvent))).scalars().all()
    assert [(e.event_type, e.severity) for e in events] == [("blocked_ip", "high")]


async def test_blocked_cidr_range(db, seed):
    user_id = await seed.user()
    await seed.block("192.0.2.0", cidr_range="192.0.2.0/24")

    with pytest.raises(AccessError):
        await AccessGuard(db).check(Principal(user_id=user_id), CLIENT)


async def test_expired_block_is_ignored(db, seed):
    user_id = await seed.user()
    await seed.block("192.0.2.10", expires_at=utcnow() - timedelta(hours=1))

    await AccessGuard(db).check(Principal(user_id=user_id), CLIENT)


async def test_missing_profile_is_allowed(db):
    import uuid

    profile = await AccessGuard(db).check(Principal(user_id=uuid.uuid4()), CLIENT)

    assert profile is None


def test_client_ip_prefers_forwarded_for():
    assert client_ip_from_headers("203.0.113.1, 10.0.0.1", "198.51.100.1", "127.0.0.1") == "203.0.113.1"
    assert client_ip_from_headers(None, "198.51.100.1", "127.0.0.1") == "198.51.100.1"
    assert client_ip_from_headers(None, None, "127.0.0.1") == "127.0.0.1"
    assert client_ip_from_headers(None, None, None) == "unknown"


def test_is_ip_in_cidr():
    assert is_ip_in_cidr("10.1.2.3", "10.0.0.0/8")
    assert not is_ip_in_cidr("11.1.2.3", "10.0.0.0/8")
    assert is_ip_in_cidr("10.1.2.3", "10.1.2.3")
    assert not is_ip_in_cidr("unknown", "10.0.0.0/8")
