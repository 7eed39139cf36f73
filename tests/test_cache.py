# tests/test_cache.py

import pytest

from mediagate.cache import MemoryCache, RedisCache, build_cache
from tests.fixtures.app import Clock
from tests.fixtures.mocks.redis import MockRedisClient


@pytest.fixture(params=["memory", "redis"])
def cache_and_clock(request):
    clock = Clock()
    if request.param == "memory":
        return MemoryCache(clock=clock), clock
    return RedisCache("redis://unused", client=MockRedisClient(clock=clock), prefix="t:"), clock


async def test_get_set_roundtrips_json_values(cache_and_clock):
    cache, _ = cache_and_clock
    await cache.set("k", {"state": "ready", "heights": [240, 480]})
    assert await cache.get("k") == {"state": "ready", "heights": [240, 480]}
    assert await cache.get("missing") is None


async def test_entries_expire_after_ttl(cache_and_clock):
    cache, clock = cache_and_clock
    await cache.set("k", "v", ttl=10)
    clock.advance(9)
    assert await cache.get("k") == "v"
    clock.advance(1)
    assert await cache.get("k") is None


async def test_zero_ttl_persists(cache_and_clock):
    cache, clock = cache_and_clock
    await cache.set("k", "v", ttl=0)
    clock.advance(10 ** 6)
    assert await cache.get("k") == "v"


async def test_set_if_absent_is_a_claim(cache_and_clock):
    cache, clock = cache_and_clock
    assert await cache.set_if_absent("claim", {"owner": "a"}, ttl=30) is True
    assert await cache.set_if_absent("claim", {"owner": "b"}, ttl=30) is False
    assert await cache.get("claim") == {"owner": "a"}

    # an expired claim can be taken over
    clock.advance(31)
    assert await cache.set_if_absent("claim", {"owner": "b"}, ttl=30) is True
    assert await cache.get("claim") == {"owner": "b"}


async def test_delete_if_equals_only_removes_matching_value(cache_and_clock):
    cache, _ = cache_and_clock
    await cache.set("claim", {"owner": "a"})
    assert await cache.delete_if_equals("claim", {"owner": "b"}) is False
    assert await cache.get("claim") == {"owner": "a"}
    assert await cache.delete_if_equals("claim", {"owner": "a"}) is True
    assert await cache.get("claim") is None


async def test_delete_and_clear(cache_and_clock):
    cache, _ = cache_and_clock
    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.delete("a")
    assert await cache.get("a") is None
    await cache.clear()
    assert await cache.get("b") is None


def test_memory_purge_expired_counts_removed_entries():
    clock = Clock()
    cache = MemoryCache(clock=clock)
    cache._data["x"] = ('"1"', clock() + 5)
    cache._data["y"] = ('"2"', None)
    clock.advance(6)
    assert cache.purge_expired() == 1
    assert len(cache) == 1


async def test_redis_close_releases_client():
    client = MockRedisClient()
    cache = RedisCache("redis://unused", client=client)
    await cache.close()
    assert client.closed


def test_build_cache_falls_back_to_memory():
    assert isinstance(build_cache("memory"), MemoryCache)
    assert isinstance(build_cache("bogus"), MemoryCache)
    assert isinstance(build_cache("redis", "redis://localhost:6379/0"), RedisCache)
