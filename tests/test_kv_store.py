import pytest

from authkernel.storage.kv import MemoryKeyValueStore


async def test_set_get_and_expiry(kv, clock):
    await kv.set("k", "v", 10)
    assert await kv.get("k") == "v"
    assert await kv.exists("k")
    assert await kv.ttl("k") == 10

    clock.advance(10)
    assert await kv.get("k") is None
    assert not await kv.exists("k")
    assert await kv.ttl("k") is None


async def test_set_rejects_sub_second_ttl(kv):
    with pytest.raises(ValueError):
        await kv.set("k", "v", 0)


async def test_delete_counts_removed_keys(kv):
    await kv.set("a", "1", 10)
    await kv.set("b", "1", 10)
    assert await kv.delete("a", "b", "missing") == 2
    assert await kv.delete() == 0


async def test_pop_consumes_once(kv, clock):
    await kv.set("state", "google", 10)
    assert await kv.pop("state") == "google"
    assert await kv.pop("state") is None
    assert not await kv.exists("state")

    await kv.set("stale", "github", 10)
    clock.advance(10)
    assert await kv.pop("stale") is None


async def test_incr_arms_ttl_only_on_first_increment(kv, clock):
    assert await kv.incr_with_ttl("counter", 60) == 1
    clock.advance(30)
    assert await kv.incr_with_ttl("counter", 60) == 2
    # Window is fixed from the first increment
    assert await kv.ttl("counter") == 30
    clock.advance(30)
    assert await kv.incr_with_ttl("counter", 60) == 1


async def test_write_batch_applies_sets_and_deletes(kv):
    await kv.set("old", "1", 10)
    await kv.write_batch(sets=[("new", "2", 10), ("other", "3", 5)], deletes=["old"])
    assert await kv.get("old") is None
    assert await kv.get("new") == "2"
    assert await kv.get("other") == "3"


async def test_write_batch_is_all_or_nothing_on_bad_ttl(kv):
    await kv.set("old", "1", 10)
    with pytest.raises(ValueError):
        await kv.write_batch(sets=[("new", "2", 10), ("bad", "3", 0)], deletes=["old"])
    assert await kv.get("old") == "1"
    assert await kv.get("new") is None


async def test_key_prefix_namespaces_entries(clock):
    first = MemoryKeyValueStore(key_prefix="tenant-a:", clock=clock)
    await first.set("k", "v", 10)
    assert "tenant-a:k" in first._entries
