import pytest

from authkernel.service.sessions import SessionRegistry, blacklist_key, refresh_key


@pytest.fixture
def registry(kv):
    return SessionRegistry(kv)


async def test_store_and_drop_session(registry, kv):
    await registry.store(1, "jti-1", "token", 60)
    assert await registry.exists(1, "jti-1")
    assert await kv.get(refresh_key(1, "jti-1")) == "token"

    await registry.drop(1, "jti-1")
    assert not await registry.exists(1, "jti-1")


async def test_sessions_are_scoped_per_account(registry):
    await registry.store(1, "jti-1", "token", 60)
    assert not await registry.exists(2, "jti-1")


async def test_revoke_marks_jti_until_expiry(registry, clock):
    await registry.revoke("jti-1", 30)
    assert await registry.is_revoked("jti-1")
    clock.advance(30)
    assert not await registry.is_revoked("jti-1")


async def test_revoke_requires_positive_ttl(registry):
    with pytest.raises(ValueError):
        await registry.revoke("jti-1", 0)


async def test_rotate_swaps_sessions_and_blacklists_old(registry, kv):
    await registry.store(5, "old", "old-token", 60)

    await registry.rotate(5, "old", 40, "new", "new-token", 60)

    assert not await registry.exists(5, "old")
    assert await registry.exists(5, "new")
    assert await registry.is_revoked("old")
    assert await kv.ttl(blacklist_key("old")) == 40
    assert await kv.ttl(refresh_key(5, "new")) == 60
