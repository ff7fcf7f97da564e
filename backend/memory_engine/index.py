"""
Process-local secondary index over memory records.

Three maps are kept:
- context key (``"<context_type>:<agent_id>"``) -> set of record ids
- tag -> set of record ids
- counterparty id -> ids in insertion order

The index only accelerates lookups. The store is the system of record and
callers must resolve ids through it; ids that no longer resolve are swept with
``discard_ids``. ``rebuild`` reproduces the same lookups from a store snapshot.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Set

from .models import ContextType, MemoryRecord


def context_key(context_type: ContextType, agent_id: str) -> str:
    return f"{ContextType.coerce(context_type).value}:{agent_id}"


class SecondaryIndex:
    def __init__(self) -> None:
        self._by_context: Dict[str, Set[str]] = {}
        self._by_tag: Dict[str, Set[str]] = {}
        self._by_counterparty: Dict[str, List[str]] = {}

    def add(self, record: MemoryRecord) -> None:
        key = context_key(record.context_type, record.agent_id)
        self._by_context.setdefault(key, set()).add(record.id)
        for tag in record.tags:
            self._by_tag.setdefault(tag, set()).add(record.id)
        if record.counterparty_id:
            ids = self._by_counterparty.setdefault(record.counterparty_id, [])
            if record.id not in ids:
                ids.append(record.id)

    def remove(self, record: MemoryRecord) -> None:
        key = context_key(record.context_type, record.agent_id)
        self._by_context.get(key, set()).discard(record.id)
        for tag in record.tags:
            self._by_tag.get(tag, set()).discard(record.id)
        if record.counterparty_id:
            ids = self._by_counterparty.get(record.counterparty_id)
            if ids and record.id in ids:
                ids.remove(record.id)

    def lookup_context(self, context_type: ContextType, agent_id: str) -> Set[str]:
        return set(self._by_context.get(context_key(context_type, agent_id), ()))

    def lookup_agent(self, agent_id: str) -> Set[str]:
        ids: Set[str] = set()
        for context_type in ContextType:
            ids |= self._by_context.get(context_key(context_type, agent_id), set())
        return ids

    def lookup_tag(self, tag: str) -> Set[str]:
        return set(self._by_tag.get(tag, ()))

    def lookup_counterparty(self, counterparty_id: str) -> List[str]:
        return list(self._by_counterparty.get(counterparty_id, ()))

    def discard_ids(self, record_ids: Iterable[str]) -> int:
        """Drop ids that the store no longer knows about from every map."""
        stale = set(record_ids)
        if not stale:
            return 0
        removed = 0
        for bucket in list(self._by_context.values()) + list(self._by_tag.values()):
            before = len(bucket)
            bucket.difference_update(stale)
            removed += before - len(bucket)
        for key, ids in self._by_counterparty.items():
            kept = [record_id for record_id in ids if record_id not in stale]
            removed += len(ids) - len(kept)
            self._by_counterparty[key] = kept
        return removed

    def prune(self) -> int:
        """Remove empty entries; returns how many keys were dropped."""
        dropped = 0
        for mapping in (self._by_context, self._by_tag, self._by_counterparty):
            empty_keys = [key for key, ids in mapping.items() if not ids]
            for key in empty_keys:
                del mapping[key]
            dropped += len(empty_keys)
        return dropped

    def clear(self) -> None:
        self._by_context.clear()
        self._by_tag.clear()
        self._by_counterparty.clear()

    def rebuild(self, records: Iterable[MemoryRecord]) -> int:
        self.clear()
        count = 0
        for record in sorted(records, key=lambda item: (item.created_at, item.id)):
            self.add(record)
            count += 1
        return count

    def snapshot(self) -> Dict[str, Dict[str, List[str]]]:
        return {
            "context": {key: sorted(ids) for key, ids in self._by_context.items() if ids},
            "tags": {key: sorted(ids) for key, ids in self._by_tag.items() if ids},
            "counterparty": {
                key: list(ids) for key, ids in self._by_counterparty.items() if ids
            },
        }

    def stats(self) -> Dict[str, int]:
        return {
            "context_keys": len(self._by_context),
            "tag_keys": len(self._by_tag),
            "counterparty_keys": len(self._by_counterparty),
        }
