import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from db.memory_store import InMemoryStore
from db.sqlite_store import SQLiteMemoryStore
from memory_engine.errors import StoreUnavailableError
from memory_engine.models import (
    AgentProfile,
    ContextFilter,
    ContextType,
    EmotionalState,
    MemoryRecord,
    new_memory_id,
)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _make_backend(kind: str, tmp_path: Path):
    if kind == "sqlite":
        backend = SQLiteMemoryStore(_sqlite_url(tmp_path / "npc-memory.db"))
    else:
        backend = InMemoryStore()
    await backend.init()
    return backend


def _record(agent_id: str = "npc-1", **kwargs) -> MemoryRecord:
    kwargs.setdefault("content", "The player bought a sword")
    return MemoryRecord(id=new_memory_id(), agent_id=agent_id, **kwargs)


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "sqlite"])
async def test_importance_is_clamped_into_backend_range(kind: str, tmp_path: Path) -> None:
    backend = await _make_backend(kind, tmp_path)
    low, high = backend.importance_range
    for value in range(-100, 101, 7):
        memory_id = await backend.create(_record(importance=value))
        stored = await backend.get(memory_id)
        assert stored is not None
        assert low <= stored.importance <= high
        if low <= value <= high:
            assert stored.importance == value
    await backend.close()


@pytest.mark.asyncio
async def test_backends_use_their_own_importance_ranges(tmp_path: Path) -> None:
    memory_backend = await _make_backend("memory", tmp_path)
    sqlite_backend = await _make_backend("sqlite", tmp_path)

    ephemeral_id = await memory_backend.create(_record(importance=0))
    persisted_id = await sqlite_backend.create(_record(importance=0))

    assert (await memory_backend.get(ephemeral_id)).importance == 1
    assert (await sqlite_backend.get(persisted_id)).importance == 0
    await sqlite_backend.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "sqlite"])
async def test_create_and_delete_keep_index_in_step(kind: str, tmp_path: Path) -> None:
    backend = await _make_backend(kind, tmp_path)
    record = _record(tags=["sword"], counterparty_id="player-1")
    memory_id = await backend.create(record)

    assert backend.index.lookup_tag("sword") == {memory_id}
    assert backend.index.lookup_counterparty("player-1") == [memory_id]

    assert await backend.delete(memory_id) is True
    assert await backend.delete(memory_id) is False
    assert backend.index.lookup_tag("sword") == set()
    assert backend.index.lookup_counterparty("player-1") == []
    assert await backend.get(memory_id) is None
    await backend.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "sqlite"])
async def test_find_applies_filters_and_inclusive_time_range(kind: str, tmp_path: Path) -> None:
    backend = await _make_backend(kind, tmp_path)
    base = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    ids = []
    for offset in range(4):
        ids.append(
            await backend.create(
                _record(
                    content=f"event {offset}",
                    context_type=ContextType.EVENT,
                    importance=offset + 2,
                    metadata={"zone": "north" if offset % 2 else "south"},
                    created_at=base + timedelta(hours=offset),
                )
            )
        )
    await backend.create(_record(agent_id="npc-2", created_at=base))

    found = await backend.find(
        ContextFilter(agent_id="npc-1", context_type=ContextType.EVENT),
        time_start=base + timedelta(hours=1),
        time_end=base + timedelta(hours=3),
    )
    assert [record.id for record in found] == [ids[3], ids[2], ids[1]]

    north = await backend.find(ContextFilter(agent_id="npc-1", metadata={"zone": "north"}))
    assert {record.id for record in north} == {ids[1], ids[3]}

    important = await backend.find(ContextFilter(agent_id="npc-1"), min_importance=4)
    assert {record.id for record in important} == {ids[2], ids[3]}
    await backend.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "sqlite"])
async def test_rebuild_index_matches_incremental_index(kind: str, tmp_path: Path) -> None:
    backend = await _make_backend(kind, tmp_path)
    for tags in (["a"], ["a", "b"], []):
        await backend.create(_record(tags=tags, counterparty_id="player-1"))
    before = backend.index.snapshot()

    backend.index.clear()
    assert await backend.rebuild_index() == 3
    assert backend.index.snapshot() == before
    await backend.close()


@pytest.mark.asyncio
async def test_sqlite_index_is_warmed_from_existing_rows(tmp_path: Path) -> None:
    db_path = tmp_path / "warm.db"
    first = SQLiteMemoryStore(_sqlite_url(db_path))
    await first.init()
    memory_id = await first.create(_record(tags=["faction"]))
    await first.close()

    second = SQLiteMemoryStore(_sqlite_url(db_path))
    await second.init()
    assert second.index.lookup_tag("faction") == {memory_id}
    await second.close()


@pytest.mark.asyncio
async def test_get_many_sweeps_ids_missing_from_store(tmp_path: Path) -> None:
    backend = await _make_backend("sqlite", tmp_path)
    memory_id = await backend.create(_record(tags=["ghost"]))

    with sqlite3.connect(tmp_path / "npc-memory.db") as conn:
        conn.execute("DELETE FROM npc_memories WHERE id = ?", (memory_id,))
        conn.commit()

    assert backend.index.lookup_tag("ghost") == {memory_id}
    assert await backend.get_many([memory_id]) == []
    assert backend.index.lookup_tag("ghost") == set()
    await backend.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "sqlite"])
async def test_relationship_upsert_keeps_one_row_per_key(kind: str, tmp_path: Path) -> None:
    backend = await _make_backend(kind, tmp_path)
    now = datetime.now(timezone.utc)
    await backend.upsert_relationship("npc-1", "player-1", {"trust": 0.4}, interaction_at=now)
    updated = await backend.upsert_relationship(
        "npc-1", "player-1", {"fear": -0.2}, interaction_at=now + timedelta(seconds=5)
    )
    assert updated.trust == pytest.approx(0.4)
    assert updated.fear == pytest.approx(-0.2)
    assert updated.respect == 0.0

    await backend.upsert_relationship(
        "npc-1", "faction-9", {"loyalty": 1.0}, counterparty_type="FACTION", interaction_at=now
    )
    players = await backend.list_relationships("npc-1")
    assert [rel.counterparty_id for rel in players] == ["player-1"]
    everyone = await backend.list_relationships("npc-1", counterparty_type=None)
    assert len(everyone) == 2
    await backend.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "sqlite"])
async def test_profile_round_trip(kind: str, tmp_path: Path) -> None:
    backend = await _make_backend(kind, tmp_path)
    assert await backend.get_profile("npc-1") is None

    profile = AgentProfile("npc-1", emotional_state=EmotionalState(anger=0.9))
    await backend.set_profile(profile)
    stored = await backend.get_profile("npc-1")
    assert stored is not None
    assert stored.emotional_state.anger == pytest.approx(0.9)
    assert stored.emotional_state.dominant_emotion == "anger"
    assert stored.personality_traits.intelligence == pytest.approx(0.7)
    await backend.close()


class _SlowStore(InMemoryStore):
    async def _get(self, memory_id):
        await asyncio.sleep(1.0)
        return None


@pytest.mark.asyncio
async def test_slow_read_times_out_as_store_unavailable() -> None:
    backend = _SlowStore(timeout_sec=0.1)
    with pytest.raises(StoreUnavailableError) as exc_info:
        await backend.get("mem_missing")
    assert exc_info.value.operation == "get"
    assert exc_info.value.reason == "timeout"


class _SlowInsertStore(InMemoryStore):
    async def _insert(self, record):
        await asyncio.sleep(0.05)
        await super()._insert(record)


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abort_write() -> None:
    backend = _SlowInsertStore()
    record = _record(tags=["late"])
    task = asyncio.create_task(backend.create(record))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.sleep(0.1)
    stored = await backend.get(record.id)
    assert stored is not None
    assert backend.index.lookup_tag("late") == {record.id}
