import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from db.memory_store import InMemoryStore
from db.sqlite_store import SQLiteMemoryStore
from memory_engine.decay import DecayEngine
from memory_engine.errors import StoreUnavailableError
from memory_engine.models import MemoryRecord, new_memory_id


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _make_backend(kind: str, tmp_path: Path):
    if kind == "sqlite":
        backend = SQLiteMemoryStore(_sqlite_url(tmp_path / "decay.db"))
    else:
        backend = InMemoryStore()
    await backend.init()
    return backend


def _aged(strength: float, *, hours: float = 48, now: datetime, **kwargs) -> MemoryRecord:
    return MemoryRecord(
        id=new_memory_id(),
        agent_id=kwargs.pop("agent_id", "npc-1"),
        content=kwargs.pop("content", "remembered thing"),
        strength=strength,
        created_at=now - timedelta(hours=hours),
        **kwargs,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["memory", "sqlite"])
async def test_decay_deletes_weak_and_weakens_strong(kind: str, tmp_path: Path) -> None:
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    backend = await _make_backend(kind, tmp_path)
    weak = _aged(0.05, now=now, tags=["weak"])
    strong = _aged(0.5, now=now)
    fresh = _aged(0.5, hours=1, now=now)
    for record in (weak, strong, fresh):
        await backend.create(record)

    result = await DecayEngine(backend, retention_days=0).run_cycle(now)

    assert result["applied"] is True
    assert result["deleted"] == 1
    assert result["updated"] == 1
    assert result["affected_agents"] == ["npc-1"]
    assert await backend.get(weak.id) is None
    assert backend.index.lookup_tag("weak") == set()
    assert (await backend.get(strong.id)).strength == pytest.approx(0.49)
    assert (await backend.get(fresh.id)).strength == pytest.approx(0.5)
    await backend.close()


@pytest.mark.asyncio
async def test_decay_is_monotonic_and_deletion_is_terminal() -> None:
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    backend = InMemoryStore()
    records = [_aged(value / 20, now=now) for value in range(1, 21)]
    for record in records:
        await backend.create(record)
    engine = DecayEngine(backend, decay_rate=0.05, retention_days=0)

    previous = {record.id: record.strength for record in records}
    gone = set()
    for cycle in range(25):
        await engine.run_cycle(now + timedelta(days=cycle))
        for record in records:
            stored = await backend.get(record.id)
            if stored is None:
                gone.add(record.id)
                continue
            assert record.id not in gone
            assert stored.strength <= previous[record.id]
            assert stored.strength > engine.delete_threshold
            previous[record.id] = stored.strength
    assert len(gone) == len(records)


@pytest.mark.asyncio
async def test_retention_purge_runs_only_for_ephemeral_backend(tmp_path: Path) -> None:
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    memory_backend = await _make_backend("memory", tmp_path)
    sqlite_backend = await _make_backend("sqlite", tmp_path)
    old_memory = _aged(1.0, hours=24 * 40, now=now)
    old_sqlite = _aged(1.0, hours=24 * 40, now=now)
    await memory_backend.create(old_memory)
    await sqlite_backend.create(old_sqlite)

    memory_result = await DecayEngine(memory_backend, retention_days=30).run_cycle(now)
    sqlite_result = await DecayEngine(sqlite_backend, retention_days=30).run_cycle(now)

    assert memory_result["purged"] == 1
    assert await memory_backend.get(old_memory.id) is None
    assert sqlite_result["purged"] == 0
    assert (await sqlite_backend.get(old_sqlite.id)).strength == pytest.approx(0.99)
    await sqlite_backend.close()


class _FlakyStore(InMemoryStore):
    def __init__(self, failing_id: str):
        super().__init__()
        self.failing_id = failing_id

    async def _set_strength(self, memory_id, value):
        if memory_id == self.failing_id:
            raise OSError("disk unplugged")
        return await super()._set_strength(memory_id, value)


@pytest.mark.asyncio
async def test_single_record_failure_does_not_abort_batch() -> None:
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    broken = _aged(0.8, now=now)
    healthy = _aged(0.8, now=now)
    backend = _FlakyStore(broken.id)
    await backend.create(broken)
    await backend.create(healthy)

    result = await DecayEngine(backend, retention_days=0).run_cycle(now)

    assert result["failed"] == 1
    assert result["updated"] == 1
    assert (await backend.get(healthy.id)).strength == pytest.approx(0.79)
    assert (await backend.get(broken.id)).strength == pytest.approx(0.8)


class _DownStore(InMemoryStore):
    async def _decay_candidates(self, cutoff):
        raise OSError("connection refused")


@pytest.mark.asyncio
async def test_unavailable_store_surfaces_from_run_cycle() -> None:
    with pytest.raises(StoreUnavailableError):
        await DecayEngine(_DownStore(), retention_days=0).run_cycle()


@pytest.mark.asyncio
async def test_weakened_record_marks_its_agent_affected() -> None:
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    backend = InMemoryStore()
    await backend.create(_aged(0.8, now=now, agent_id="npc-7"))

    result = await DecayEngine(backend, retention_days=0).run_cycle(now)

    assert result["deleted"] == 0
    assert result["updated"] == 1
    assert result["affected_agents"] == ["npc-7"]


class _SlowScanStore(InMemoryStore):
    async def _decay_candidates(self, cutoff):
        await asyncio.sleep(0.05)
        return await super()._decay_candidates(cutoff)


@pytest.mark.asyncio
async def test_cycle_started_while_another_runs_is_refused() -> None:
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    backend = _SlowScanStore()
    record = _aged(0.8, now=now)
    await backend.create(record)
    engine = DecayEngine(backend, retention_days=0)

    first = asyncio.create_task(engine.run_cycle(now))
    await asyncio.sleep(0.01)
    assert engine.running is True
    refused = await engine.run_cycle(now)
    result = await first

    assert refused == {"applied": False, "reason": "already_running"}
    assert result["updated"] == 1
    assert engine.running is False
    assert (await backend.get(record.id)).strength == pytest.approx(0.79)
