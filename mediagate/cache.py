# mediagate/cache.py
"""Ephemeral key/value cache with per-key TTL.

Two backends share one async interface:

* :class:`MemoryCache` - in-process dict, expired entries are reclaimed lazily
  on access and in bulk by :meth:`MemoryCache.purge_expired`.
* :class:`RedisCache` - ``redis.asyncio``; values are stored as JSON and TTLs
  are native key expiries.

A TTL of ``0`` or less persists the entry until it is deleted.
``set_if_absent`` is the atomic claim primitive the job coordinators rely on.
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

log = logging.getLogger("cache")

SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "3"))
KEY_PREFIX = os.getenv("CACHE_KEY_PREFIX", "mediagate:")

# Delete only when the stored value still matches (claim release by its owner)
_DELETE_IF_EQUALS_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class EphemeralCache:
    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: int = 0) -> None:
        raise NotImplementedError

    async def set_if_absent(self, key: str, value: Any, ttl: int = 0) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# -----------------------------------------------------------------------------
# In-process backend
# -----------------------------------------------------------------------------
class MemoryCache(EphemeralCache):
    """Dict-backed cache. Atomic within one event loop: no await between check and write."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    def _deadline(self, ttl: int) -> Optional[float]:
        return None if ttl is None or ttl <= 0 else self._clock() + ttl

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        raw, deadline = item
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            return None
        return raw

    async def get(self, key: str) -> Optional[Any]:
        raw = self._live(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int = 0) -> None:
        self._data[key] = (json.dumps(value), self._deadline(ttl))

    async def set_if_absent(self, key: str, value: Any, ttl: int = 0) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (json.dumps(value), self._deadline(ttl))
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        raw = self._live(key)
        if raw is not None and raw == json.dumps(value):
            self._data.pop(key, None)
            return True
        return False

    async def clear(self) -> None:
        self._data.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        dead = [k for k, (_, d) in self._data.items() if d is not None and now >= d]
        for k in dead:
            self._data.pop(k, None)
        return len(dead)

    def __len__(self) -> int:
        return len(self._data)


# -----------------------------------------------------------------------------
# Redis backend
# -----------------------------------------------------------------------------
class RedisCache(EphemeralCache):
    def __init__(self, url: str, *, client: Optional[Any] = None, prefix: str = KEY_PREFIX):
        self.url = url
        self.prefix = prefix
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=SOCKET_TIMEOUT,
                socket_connect_timeout=SOCKET_TIMEOUT,
                health_check_interval=30,
            )
        return self._client

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def connect(self) -> None:
        await self.client.ping()
        log.info("connected to redis at %s", self.url.rsplit("@", 1)[-1])

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._k(key))
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int = 0) -> None:
        raw = json.dumps(value)
        if ttl and ttl > 0:
            await self.client.set(self._k(key), raw, ex=int(ttl))
        else:
            await self.client.set(self._k(key), raw)

    async def set_if_absent(self, key: str, value: Any, ttl: int = 0) -> bool:
        raw = json.dumps(value)
        if ttl and ttl > 0:
            ok = await self.client.set(self._k(key), raw, nx=True, ex=int(ttl))
        else:
            ok = await self.client.set(self._k(key), raw, nx=True)
        return bool(ok)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._k(key))

    async def delete_if_equals(self, key: str, value: Any) -> bool:
        n = await self.client.eval(_DELETE_IF_EQUALS_LUA, 1, self._k(key), json.dumps(value))
        return bool(n)

    async def clear(self) -> None:
        async for k in self.client.scan_iter(match=f"{self.prefix}*"):
            await self.client.delete(k)

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except RedisError as e:
            log.warning("redis close failed: %r", e)
        self._client = None


def build_cache(backend: str, redis_url: str = "") -> EphemeralCache:
    kind = (backend or "memory").strip().lower()
    if kind == "redis":
        return RedisCache(redis_url)
    if kind != "memory":
        log.warning("unknown CACHE_BACKEND %r, using in-process cache", backend)
    return MemoryCache()
