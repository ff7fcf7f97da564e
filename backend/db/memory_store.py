"""
In-memory storage backend.

Everything lives in process-local dicts and is lost on restart. Candidate
lookups go through the secondary index first and are then resolved against the
record map, so an index entry without a live record is swept instead of served.
Importance is clamped into [1, 10] for this backend.
"""

import copy
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from memory_engine.backend import MemoryBackend
from memory_engine.index import SecondaryIndex
from memory_engine.models import (
    EPHEMERAL_IMPORTANCE_RANGE,
    AgentProfile,
    ContextFilter,
    MemoryRecord,
    RelationshipRecord,
    as_utc,
)

RelationshipKey = Tuple[str, str, str]


class InMemoryStore(MemoryBackend):
    name = "memory"
    importance_range = EPHEMERAL_IMPORTANCE_RANGE
    retention_purge = True

    def __init__(self, index: Optional[SecondaryIndex] = None, timeout_sec: float = 5.0):
        super().__init__(index=index, timeout_sec=timeout_sec)
        self._records: Dict[str, MemoryRecord] = {}
        self._relationships: Dict[RelationshipKey, RelationshipRecord] = {}
        self._profiles: Dict[str, AgentProfile] = {}

    # ------------------------------------------------------------------
    # Memory records
    # ------------------------------------------------------------------

    async def _insert(self, record: MemoryRecord) -> None:
        if record.id in self._records:
            raise ValueError(f"Memory '{record.id}' already exists")
        self._records[record.id] = copy.deepcopy(record)

    async def _remove(self, memory_id: str) -> Optional[MemoryRecord]:
        return self._records.pop(memory_id, None)

    async def _set_strength(self, memory_id: str, value: float) -> bool:
        record = self._records.get(memory_id)
        if record is None:
            return False
        record.strength = value
        return True

    async def _get(self, memory_id: str) -> Optional[MemoryRecord]:
        record = self._records.get(memory_id)
        return copy.deepcopy(record) if record is not None else None

    async def _get_many(self, memory_ids: List[str]) -> List[MemoryRecord]:
        return [
            copy.deepcopy(self._records[memory_id])
            for memory_id in memory_ids
            if memory_id in self._records
        ]

    def _candidate_ids(self, context_filter: ContextFilter) -> List[str]:
        if context_filter.agent_id is not None and context_filter.context_type is not None:
            ids = self.index.lookup_context(context_filter.context_type, context_filter.agent_id)
        elif context_filter.agent_id is not None:
            ids = self.index.lookup_agent(context_filter.agent_id)
        elif context_filter.counterparty_id is not None:
            ids = set(self.index.lookup_counterparty(context_filter.counterparty_id))
        else:
            return list(self._records.keys())

        stale = [memory_id for memory_id in ids if memory_id not in self._records]
        if stale:
            self.index.discard_ids(stale)
        return [memory_id for memory_id in ids if memory_id in self._records]

    async def _find(
        self,
        context_filter: ContextFilter,
        *,
        min_importance: Optional[int],
        time_start: Optional[datetime],
        time_end: Optional[datetime],
    ) -> List[MemoryRecord]:
        start = as_utc(time_start)
        end = as_utc(time_end)
        results: List[MemoryRecord] = []
        for memory_id in self._candidate_ids(context_filter):
            record = self._records[memory_id]
            if not context_filter.matches(record):
                continue
            if min_importance is not None and record.importance < min_importance:
                continue
            if start is not None and record.created_at < start:
                continue
            if end is not None and record.created_at > end:
                continue
            results.append(copy.deepcopy(record))
        results.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        return results

    async def _decay_candidates(self, cutoff: datetime) -> List[MemoryRecord]:
        limit = as_utc(cutoff)
        return [
            copy.deepcopy(record)
            for record in self._records.values()
            if record.created_at < limit and record.strength > 0
        ]

    async def _list_all(self) -> List[MemoryRecord]:
        return [copy.deepcopy(record) for record in self._records.values()]

    # ------------------------------------------------------------------
    # Relationships and profiles
    # ------------------------------------------------------------------

    async def _upsert_relationship(
        self,
        agent_id: str,
        counterparty_id: str,
        counterparty_type: str,
        values: Dict[str, float],
        interaction_at: datetime,
    ) -> RelationshipRecord:
        key = (agent_id, counterparty_id, counterparty_type)
        record = self._relationships.get(key)
        if record is None:
            record = RelationshipRecord.neutral(agent_id, counterparty_id, counterparty_type)
            self._relationships[key] = record
        for name, value in values.items():
            setattr(record, name, value)
        record.last_interaction_at = interaction_at
        return copy.deepcopy(record)

    async def _get_relationship(
        self, agent_id: str, counterparty_id: str, counterparty_type: str
    ) -> Optional[RelationshipRecord]:
        record = self._relationships.get((agent_id, counterparty_id, counterparty_type))
        return copy.deepcopy(record) if record is not None else None

    async def _list_relationships(
        self, agent_id: str, limit: int, counterparty_type: Optional[str]
    ) -> List[RelationshipRecord]:
        rows = [
            record
            for (owner, _, kind), record in self._relationships.items()
            if owner == agent_id and (counterparty_type is None or kind == counterparty_type)
        ]
        rows.sort(
            key=lambda item: (
                item.last_interaction_at.timestamp() if item.last_interaction_at else 0.0
            ),
            reverse=True,
        )
        return [copy.deepcopy(record) for record in rows[:limit]]

    async def _get_profile(self, agent_id: str) -> Optional[AgentProfile]:
        profile = self._profiles.get(agent_id)
        return copy.deepcopy(profile) if profile is not None else None

    async def _set_profile(self, profile: AgentProfile) -> None:
        self._profiles[profile.agent_id] = copy.deepcopy(profile)
