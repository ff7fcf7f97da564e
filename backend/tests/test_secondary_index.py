from datetime import datetime, timedelta, timezone

from memory_engine.index import SecondaryIndex, context_key
from memory_engine.models import ContextType, MemoryRecord


def _record(memory_id: str, offset_minutes: int = 0, **kwargs) -> MemoryRecord:
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    kwargs.setdefault("agent_id", "npc-1")
    kwargs.setdefault("content", f"content {memory_id}")
    return MemoryRecord(
        id=memory_id,
        created_at=base + timedelta(minutes=offset_minutes),
        **kwargs,
    )


def test_context_key_uses_type_and_agent() -> None:
    assert context_key(ContextType.CONVERSATION, "npc-1") == "conversation:npc-1"
    assert context_key("not-a-type", "npc-1") == "general:npc-1"


def test_add_and_remove_update_all_three_maps() -> None:
    index = SecondaryIndex()
    record = _record(
        "m1",
        context_type=ContextType.MISSION,
        tags=["mission", "gold"],
        counterparty_id="player-7",
    )
    index.add(record)

    assert index.lookup_context(ContextType.MISSION, "npc-1") == {"m1"}
    assert index.lookup_agent("npc-1") == {"m1"}
    assert index.lookup_tag("gold") == {"m1"}
    assert index.lookup_counterparty("player-7") == ["m1"]

    index.remove(record)
    assert index.lookup_context(ContextType.MISSION, "npc-1") == set()
    assert index.lookup_tag("gold") == set()
    assert index.lookup_counterparty("player-7") == []


def test_counterparty_lookup_keeps_insertion_order() -> None:
    index = SecondaryIndex()
    for memory_id in ("m3", "m1", "m2"):
        index.add(_record(memory_id, counterparty_id="player-1"))
    index.add(_record("m1", counterparty_id="player-1"))
    assert index.lookup_counterparty("player-1") == ["m3", "m1", "m2"]


def test_discard_ids_and_prune_sweep_stale_entries() -> None:
    index = SecondaryIndex()
    index.add(_record("m1", tags=["a"], counterparty_id="p"))
    index.add(_record("m2", tags=["a"]))

    removed = index.discard_ids(["m1"])
    assert removed == 3
    assert index.lookup_tag("a") == {"m2"}
    assert index.lookup_counterparty("p") == []

    assert index.prune() == 1
    assert index.stats()["counterparty_keys"] == 0


def test_rebuild_reproduces_identical_lookups() -> None:
    records = [
        _record("m1", 0, tags=["x"], counterparty_id="p1"),
        _record("m2", 1, context_type=ContextType.EVENT, tags=["x", "y"]),
        _record("m3", 2, agent_id="npc-2", counterparty_id="p1"),
    ]
    incremental = SecondaryIndex()
    for record in records:
        incremental.add(record)

    rebuilt = SecondaryIndex()
    count = rebuilt.rebuild(list(reversed(records)))

    assert count == 3
    assert rebuilt.snapshot() == incremental.snapshot()
