import pytest
from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError

from mediaxform.core.cache import RedisCache
from mediaxform.core.exceptions import TransientIOError


@pytest.mark.asyncio
async def test_entry_expires_after_ttl(cache, clock):
    await cache.set("obj:alice:1", "payload", ttl_seconds=300)

    clock.advance(299)
    assert await cache.get("obj:alice:1") == "payload"

    clock.advance(2)
    assert await cache.get("obj:alice:1") is None


@pytest.mark.asyncio
async def test_entry_without_ttl_never_expires(cache, clock):
    await cache.set("k", "v")
    clock.advance(10 ** 6)

    assert await cache.get("k") == "v"


@pytest.mark.asyncio
async def test_add_only_sets_absent_keys(cache, clock):
    assert await cache.add("lease:a:fp", "m1", ttl_seconds=30) is True
    assert await cache.add("lease:a:fp", "m2", ttl_seconds=30) is False
    assert await cache.get("lease:a:fp") == "m1"

    clock.advance(30)
    assert await cache.add("lease:a:fp", "m3", ttl_seconds=30) is True


@pytest.mark.asyncio
async def test_incr_counts_from_zero_and_keeps_expiry(cache, clock):
    assert await cache.incr("ver:alice") == 1
    assert await cache.incr("ver:alice") == 2

    await cache.set("counter", "7", ttl_seconds=10)
    assert await cache.incr("counter") == 8
    clock.advance(10)
    assert await cache.get("counter") is None


@pytest.mark.asyncio
async def test_delete(cache):
    await cache.set("k", "v")
    await cache.delete("k")
    await cache.delete("missing")

    assert await cache.get("k") is None
    assert cache.keys() == []


@pytest.mark.asyncio
async def test_redis_connection_errors_are_transient():
    client = AsyncMock()
    client.get.side_effect = RedisConnectionError("refused")
    cache = RedisCache(client)

    with pytest.raises(TransientIOError) as exc_info:
        await cache.get("k")

    assert exc_info.value.details["service"] == "redis"


@pytest.mark.asyncio
async def test_redis_add_uses_set_nx():
    client = AsyncMock()
    client.set.return_value = None
    cache = RedisCache(client)

    assert await cache.add("ver:alice", "1") is False
    client.set.assert_awaited_once_with("ver:alice", "1", ex=None, nx=True)
