"""
Read-side view cache.

Entries hold JSON text exactly as written, so a snapshot taken with
``snapshot`` and put back with ``restore`` is byte-for-byte identical.
The cache is never a source of truth: entries are dropped by invalidation
and refilled by the next read through ``get_or_load``.

Every invalidation bumps a generation counter for the scope it touches
(``order-list:{user_id}``, ``order-detail:{order_id}``...). A read-through
fill only lands if the scope's generation is the one seen before the loader
ran, so a slow reader cannot put back a value an invalidation just dropped.
"""

import json
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

import redis.asyncio as aioredis
import structlog

from enrollment_checkout.cache.keys import generation_scope
from enrollment_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Generation keys outlive any loader by far; they only need to stop growing
GENERATION_TTL_SECONDS = 7 * 24 * 3600

FILL_IF_CURRENT_LUA = """
-- KEYS[1] = generation key, KEYS[2] = entry key
-- ARGV[1] = generation seen before loading, ARGV[2] = entry, ARGV[3] = ttl (0 = none)
if (redis.call('GET', KEYS[1]) or '0') ~= ARGV[1] then
    return 0
end
if tonumber(ARGV[3]) > 0 then
    redis.call('SET', KEYS[2], ARGV[2], 'EX', ARGV[3])
else
    redis.call('SET', KEYS[2], ARGV[2])
end
return 1
"""

BUMP_GENERATIONS_LUA = """
-- KEYS = generation keys, ARGV[1] = expiry seconds
for _, key in ipairs(KEYS) do
    redis.call('INCR', key)
    redis.call('EXPIRE', key, ARGV[1])
end
return #KEYS
"""

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def glob_escape(text: str) -> str:
    """Escape text for literal use in a Redis MATCH pattern."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class CacheBackend(ABC):
    """Raw string storage under the view cache."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, raw: str, ttl: Optional[int]) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns the number deleted."""

    @abstractmethod
    async def generation(self, scope: str) -> str:
        """Current generation token of a scope."""

    @abstractmethod
    async def bump_generations(self, *scopes: str) -> None:
        ...

    @abstractmethod
    async def set_if_generation(
        self, key: str, raw: str, ttl: Optional[int], scope: str, generation: str
    ) -> bool:
        """Atomically store the entry only if scope is still at generation."""

    async def ping(self) -> None:
        """Raise if the backend is unreachable."""

    async def close(self) -> None:
        """Release connections."""


class MemoryCacheBackend(CacheBackend):
    """Process-local backend. Expired entries are dropped on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._generations: Dict[str, int] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return raw

    def _store(self, key: str, raw: str, ttl: Optional[int]) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._entries[key] = (raw, expires_at)

    async def set(self, key: str, raw: str, ttl: Optional[int]) -> None:
        self._store(key, raw, ttl)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def generation(self, scope: str) -> str:
        return str(self._generations.get(scope, 0))

    async def bump_generations(self, *scopes: str) -> None:
        for scope in scopes:
            self._generations[scope] = self._generations.get(scope, 0) + 1

    async def set_if_generation(
        self, key: str, raw: str, ttl: Optional[int], scope: str, generation: str
    ) -> bool:
        # No await between the check and the write
        if str(self._generations.get(scope, 0)) != generation:
            return False
        self._store(key, raw, ttl)
        return True

    def keys(self) -> Iterable[str]:
        return list(self._entries)


class RedisCacheBackend(CacheBackend):
    """
    Redis backend shared by every process of the service.

    All keys live under a namespace so prefix deletes never touch foreign
    data. Generation counters live under ``{namespace}gen:`` and are checked
    and written by Lua scripts, so the compare-and-set is atomic across
    processes.
    """

    def __init__(self, redis_client: aioredis.Redis, namespace: str = "checkout:view:"):
        self.redis_client = redis_client
        self.namespace = namespace
        self._fill_script = None
        self._bump_script = None

    @classmethod
    def from_url(cls, redis_url: str, namespace: str = "checkout:view:") -> "RedisCacheBackend":
        client = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        return cls(client, namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _generation_key(self, scope: str) -> str:
        return f"{self.namespace}gen:{scope}"

    async def get(self, key: str) -> Optional[str]:
        return await self.redis_client.get(self._key(key))

    async def set(self, key: str, raw: str, ttl: Optional[int]) -> None:
        if ttl:
            await self.redis_client.setex(self._key(key), ttl, raw)
        else:
            await self.redis_client.set(self._key(key), raw)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.redis_client.delete(*(self._key(key) for key in keys))

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch = []
        pattern = f"{glob_escape(self._key(prefix))}*"
        async for key in self.redis_client.scan_iter(match=pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                deleted += await self.redis_client.delete(*batch)
                batch = []
        if batch:
            deleted += await self.redis_client.delete(*batch)
        return deleted

    async def generation(self, scope: str) -> str:
        value = await self.redis_client.get(self._generation_key(scope))
        return str(value) if value is not None else "0"

    async def bump_generations(self, *scopes: str) -> None:
        if not scopes:
            return
        if self._bump_script is None:
            self._bump_script = self.redis_client.register_script(BUMP_GENERATIONS_LUA)
        await self._bump_script(
            keys=[self._generation_key(scope) for scope in scopes],
            args=[GENERATION_TTL_SECONDS],
        )

    async def set_if_generation(
        self, key: str, raw: str, ttl: Optional[int], scope: str, generation: str
    ) -> bool:
        if self._fill_script is None:
            self._fill_script = self.redis_client.register_script(FILL_IF_CURRENT_LUA)
        stored = await self._fill_script(
            keys=[self._generation_key(scope), self._key(key)],
            args=[generation, raw, ttl or 0],
        )
        return bool(stored)

    async def ping(self) -> None:
        await self.redis_client.ping()

    async def close(self) -> None:
        await self.redis_client.aclose()


class ViewCache:
    """
    JSON view cache in front of orders, enrollments and payments.

    Read errors from the backend degrade to a miss; write errors on ``set``
    are logged and ignored. Invalidation errors propagate so that callers
    can turn them into CacheInvalidationError.
    """

    def __init__(self, backend: CacheBackend, ttl: Optional[int] = None):
        self.backend = backend
        self.ttl = ttl

    async def get_raw(self, key: str) -> Optional[str]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            logger.warning("view_cache_read_failed", key=key, error=str(e))
            return None

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.get_raw(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        await self.set_raw(key, json.dumps(value, sort_keys=True))

    async def set_raw(self, key: str, raw: str) -> None:
        try:
            await self.backend.set(key, raw, self.ttl)
        except Exception as e:
            logger.warning("view_cache_write_failed", key=key, error=str(e))

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Return the cached value, or load, cache and return it.

        The loaded value is only cached if no invalidation touched the key's
        scope while the loader ran.
        """
        cached = await self.get(key)
        if cached is not None:
            metrics.record_cache_lookup(hit=True)
            return cached
        metrics.record_cache_lookup(hit=False)
        scope = generation_scope(key)
        try:
            generation = await self.backend.generation(scope)
        except Exception as e:
            logger.warning("view_cache_read_failed", key=key, error=str(e))
            generation = None
        value = await loader()
        if value is not None and generation is not None:
            await self._fill(key, value, scope, generation)
        return value

    async def _fill(self, key: str, value: Any, scope: str, generation: str) -> None:
        raw = json.dumps(value, sort_keys=True)
        try:
            stored = await self.backend.set_if_generation(key, raw, self.ttl, scope, generation)
        except Exception as e:
            logger.warning("view_cache_write_failed", key=key, error=str(e))
            return
        if not stored:
            logger.debug("view_cache_fill_discarded", key=key, scope=scope)

    async def invalidate(self, keys: Iterable[str] = (), prefixes: Iterable[str] = ()) -> None:
        """
        Drop entries. Raises whatever the backend raises.

        Generations are bumped before anything is deleted, so a load that
        started earlier cannot write its result back afterwards.

        Args:
            keys: Exact keys to drop
            prefixes: Key prefixes whose every entry is dropped
        """
        keys = list(keys)
        prefixes = list(prefixes)
        scopes = {generation_scope(key) for key in keys + prefixes}
        if scopes:
            await self.backend.bump_generations(*sorted(scopes))
        if keys:
            await self.backend.delete(*keys)
        for prefix in prefixes:
            await self.backend.delete_prefix(prefix)

    async def snapshot(self, key: str) -> Optional[str]:
        """Raw entry text, or None when the key is absent."""
        return await self.backend.get(key)

    async def restore(self, key: str, raw: Optional[str]) -> None:
        """Put back a snapshot verbatim; None removes the key."""
        if raw is None:
            await self.backend.delete(key)
        else:
            await self.backend.set(key, raw, self.ttl)
