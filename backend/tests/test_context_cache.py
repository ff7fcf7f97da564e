import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from db.memory_store import InMemoryStore
from memory_engine.context_cache import ContextCache, InProcessCache, RedisCache, cache_key
from memory_engine.engine import MemoryEngine
from memory_engine.models import ContextType, MemoryContext, MemoryRecord, new_memory_id


class _CountingStore(InMemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    async def _find(self, context_filter, **kwargs):
        self.reads += 1
        return await super()._find(context_filter, **kwargs)

    async def _list_relationships(self, agent_id, limit, counterparty_type):
        self.reads += 1
        return await super()._list_relationships(agent_id, limit, counterparty_type)

    async def _get_profile(self, agent_id):
        self.reads += 1
        return await super()._get_profile(agent_id)


class _DownStore(InMemoryStore):
    async def _find(self, context_filter, **kwargs):
        raise OSError("database is gone")


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _FakeRedis:
    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.data = {}
        self.fail = fail
        self.delay = delay
        self.closed = False

    async def _maybe_fail(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def get(self, key):
        await self._maybe_fail()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        await self._maybe_fail()
        self.data[key] = value
        return True

    async def delete(self, key):
        await self._maybe_fail()
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_cache_hit_does_not_touch_store() -> None:
    store = _CountingStore()
    engine = MemoryEngine(store)
    await engine.remember("npc-1", "Said hello", importance=8, context_type=ContextType.CONVERSATION)

    first = await engine.get_context("npc-1")
    reads_after_miss = store.reads
    second = await engine.get_context("npc-1")

    assert reads_after_miss > 0
    assert store.reads == reads_after_miss
    assert second.to_dict() == first.to_dict()
    assert engine.cache.hits == 1


@pytest.mark.asyncio
async def test_write_invalidates_cached_context() -> None:
    engine = MemoryEngine(InMemoryStore())
    await engine.remember("npc-1", "first memory")
    assert len((await engine.get_context("npc-1")).recent_memories) == 1

    await engine.remember("npc-1", "second memory")
    assert len((await engine.get_context("npc-1")).recent_memories) == 2

    await engine.upsert_relationship("npc-1", "player-1", {"trust": 0.5})
    context = await engine.get_context("npc-1")
    assert [rel.counterparty_id for rel in context.relationships] == ["player-1"]


@pytest.mark.asyncio
async def test_store_failure_returns_neutral_context_and_is_not_cached() -> None:
    engine = MemoryEngine(_DownStore())
    context = await engine.get_context("npc-1")

    assert context.recent_memories == []
    assert context.relationships == []
    assert context.emotional_state.to_dict() == MemoryContext.neutral().emotional_state.to_dict()
    assert await engine.cache.backend.get(cache_key("npc-1")) is None


@pytest.mark.asyncio
async def test_in_process_cache_expires_after_ttl() -> None:
    clock = _FakeClock()
    cache = ContextCache(InProcessCache(clock=clock), ttl_seconds=60)
    await cache.put("npc-1", MemoryContext.neutral())

    assert await cache.get("npc-1") is not None
    clock.now += 61
    assert await cache.get("npc-1") is None


@pytest.mark.asyncio
async def test_redis_cache_round_trip() -> None:
    fake = _FakeRedis()
    cache = ContextCache(RedisCache(client=fake), ttl_seconds=3600)
    await cache.put("npc-1", MemoryContext.neutral())

    raw = fake.data[cache_key("npc-1")]
    assert json.loads(raw)["emotional_state"]["dominant_emotion"] == "confidence"
    assert await cache.get("npc-1") is not None

    await cache.invalidate("npc-1")
    assert cache_key("npc-1") not in fake.data
    await cache.backend.close()
    assert fake.closed is True


@pytest.mark.asyncio
async def test_unreachable_redis_degrades_to_miss() -> None:
    cache_backend = RedisCache(client=_FakeRedis(fail=True))
    assert await cache_backend.get("k") is None
    assert await cache_backend.set("k", "v", 10) is False
    assert await cache_backend.delete("k") is False

    engine = MemoryEngine(InMemoryStore(), cache=ContextCache(cache_backend))
    await engine.remember("npc-1", "still works")
    context = await engine.get_context("npc-1")
    assert [memory.content for memory in context.recent_memories] == ["still works"]


@pytest.mark.asyncio
async def test_slow_redis_times_out_as_miss() -> None:
    cache_backend = RedisCache(client=_FakeRedis(delay=0.5), timeout_sec=0.05)
    assert await cache_backend.get("k") is None


@pytest.mark.asyncio
async def test_unreadable_cache_entry_is_dropped() -> None:
    backend = InProcessCache()
    cache = ContextCache(backend)
    await backend.set(cache_key("npc-1"), "{not json", 60)
    assert await cache.get("npc-1") is None
    assert len(backend) == 0


@pytest.mark.asyncio
async def test_in_process_cache_sweeps_expired_entries_on_set() -> None:
    clock = _FakeClock()
    backend = InProcessCache(clock=clock)
    await backend.set("ai_memory:npc-1", "{}", 60)
    clock.now += 61

    await backend.set("ai_memory:npc-2", "{}", 60)

    assert len(backend) == 1
    assert await backend.get("ai_memory:npc-2") == "{}"


@pytest.mark.asyncio
async def test_context_that_cannot_be_encoded_is_served_uncached() -> None:
    backend = InProcessCache()
    cache = ContextCache(backend)
    record = MemoryRecord(
        id=new_memory_id(), agent_id="npc-1", content="odd keys", metadata={(1, 2): "pair"}
    )
    context = MemoryContext(recent_memories=[record])

    assert await cache.put("npc-1", context) is False
    assert len(backend) == 0

    loaded = await cache.get_or_load("npc-1", lambda: _loaded(context))
    assert loaded is context


async def _loaded(context: MemoryContext):
    return context, True
