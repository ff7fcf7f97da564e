"""
Cache-aside layer for assembled memory contexts.

Reads check the cache first and populate it on a miss; writes delete the
agent's key instead of updating it. A context that cannot be serialised is
served uncached. Cache backends never raise: an unreachable or slow backend
reads as a miss and a failed delete is logged.

Known race: a reader that missed and loaded from the store just before a write
committed can store its result after that write has already invalidated the
key. The pre-write context then stays cached until the next write for the agent
or until the TTL expires. This window is accepted; it is bounded by the TTL.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from redis import asyncio as redis_async
from redis.exceptions import RedisError

from .models import MemoryContext

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "ai_memory:"


def cache_key(agent_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{agent_id}"


class CacheBackend:
    """``get``/``set``/``delete`` over string values; failures degrade to a miss."""

    name = "abstract"

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InProcessCache(CacheBackend):
    """TTL dict local to this process."""

    name = "in_process"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        now = self._clock()
        self._sweep(now)
        self._entries[key] = (now + max(1, int(ttl_seconds)), value)
        return True

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache(CacheBackend):
    """Redis-backed cache; every call is bounded by ``timeout_sec``."""

    name = "redis"

    def __init__(
        self,
        redis_url: str = "",
        *,
        client: Any = None,
        timeout_sec: float = 1.0,
    ):
        if client is None:
            client = redis_async.from_url(
                redis_url, encoding="utf-8", decode_responses=True
            )
        self._client = client
        self._timeout_sec = max(0.05, float(timeout_sec))

    async def _call(self, operation: str, key: str, work: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(work, timeout=self._timeout_sec)
        except (RedisError, ConnectionError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Redis %s failed for %s: %s", operation, key, exc)
            return None

    async def get(self, key: str) -> Optional[str]:
        value = await self._call("get", key, self._client.get(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        result = await self._call(
            "set", key, self._client.set(key, value, ex=max(1, int(ttl_seconds)))
        )
        return bool(result)

    async def delete(self, key: str) -> bool:
        result = await self._call("delete", key, self._client.delete(key))
        return bool(result)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, ConnectionError, OSError) as exc:
            logger.warning("Redis close failed: %s", exc)


class ContextCache:
    """Facade owning the cached ``MemoryContext`` per agent."""

    def __init__(self, backend: Optional[CacheBackend] = None, ttl_seconds: int = 3600):
        self.backend = backend if backend is not None else InProcessCache()
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.hits = 0
        self.misses = 0

    async def get(self, agent_id: str) -> Optional[MemoryContext]:
        raw = await self.backend.get(cache_key(agent_id))
        if raw is None:
            self.misses += 1
            return None
        try:
            context = MemoryContext.from_dict(json.loads(raw))
        except (TypeError, ValueError, KeyError) as exc:
            logger.warning("Dropping unreadable cached context for agent %s: %s", agent_id, exc)
            await self.invalidate(agent_id)
            self.misses += 1
            return None
        self.hits += 1
        return context

    async def put(self, agent_id: str, context: MemoryContext) -> bool:
        # Metadata values JSON cannot encode are cached as their str() form.
        try:
            payload = json.dumps(context.to_dict(), ensure_ascii=False, default=str)
        except (TypeError, ValueError) as exc:
            logger.warning("Not caching context for agent %s: %s", agent_id, exc)
            return False
        return await self.backend.set(cache_key(agent_id), payload, self.ttl_seconds)

    async def invalidate(self, agent_id: str) -> None:
        await self.backend.delete(cache_key(agent_id))

    async def get_or_load(
        self,
        agent_id: str,
        loader: Callable[[], Awaitable[Tuple[MemoryContext, bool]]],
    ) -> MemoryContext:
        """
        Return the cached context, or build one with ``loader``.

        ``loader`` returns ``(context, cacheable)``; fallbacks built after a
        store failure pass ``cacheable=False`` so they are never cached.
        """
        cached = await self.get(agent_id)
        if cached is not None:
            return cached
        context, cacheable = await loader()
        if cacheable:
            await self.put(agent_id, context)
        return context

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.backend.name, "hits": self.hits, "misses": self.misses}
