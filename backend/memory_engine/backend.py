"""
Storage strategy shared by the persistent and the in-memory backends.

``MemoryBackend`` owns the write discipline: importance is clamped into the
backend's range before acceptance, and every create/delete updates the
secondary index inside the same shielded operation. A caller that is cancelled
mid-write stops waiting, but the write itself still finishes or rolls back as a
whole. When such a write commits late, ``on_late_write`` is awaited with the
agent id so derived state (the context cache) can be dropped.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .errors import StoreUnavailableError
from .index import SecondaryIndex
from .models import (
    DEFAULT_COUNTERPARTY_TYPE,
    AgentProfile,
    ContextFilter,
    MemoryRecord,
    RelationshipRecord,
    clamp_importance,
    clamp_strength,
)

logger = logging.getLogger(__name__)


class MemoryBackend(ABC):
    """System of record for memories, relationships and agent profiles."""

    name = "abstract"
    importance_range: Tuple[int, int] = (0, 10)
    # Whether maintenance also purges records past the retention horizon.
    retention_purge = False

    def __init__(self, index: Optional[SecondaryIndex] = None, timeout_sec: float = 5.0):
        self.index = index if index is not None else SecondaryIndex()
        self._timeout_sec = max(0.1, float(timeout_sec))
        # Awaited with the agent id when a write commits after its caller gave up.
        self.on_late_write: Optional[Callable[[str], Awaitable[Any]]] = None
        self._late_tasks: Set["asyncio.Future[Any]"] = set()

    async def init(self) -> None:
        """Prepare storage and warm the index from it."""
        await self.rebuild_index()

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Guarded execution
    # ------------------------------------------------------------------

    async def _read(self, operation: str, work: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(work(), timeout=self._timeout_sec)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(operation, "timeout") from exc
        except StoreUnavailableError:
            raise
        except self.transient_errors() as exc:
            raise StoreUnavailableError(operation, str(exc)) from exc

    async def _write(
        self,
        operation: str,
        work: Callable[[], Awaitable[Any]],
        agent_id: Optional[str] = None,
    ) -> Any:
        task = asyncio.ensure_future(work())
        settle = functools.partial(self._settle_orphaned_write, operation, agent_id)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout_sec)
        except asyncio.TimeoutError as exc:
            task.add_done_callback(settle)
            raise StoreUnavailableError(operation, "timeout") from exc
        except asyncio.CancelledError:
            task.add_done_callback(settle)
            raise
        except StoreUnavailableError:
            raise
        except self.transient_errors() as exc:
            raise StoreUnavailableError(operation, str(exc)) from exc

    def _settle_orphaned_write(
        self, operation: str, agent_id: Optional[str], task: "asyncio.Future[Any]"
    ) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Store %s failed after its caller gave up: %s", operation, exc)
            return
        logger.info(
            "Store %s for agent %s committed after its caller gave up", operation, agent_id
        )
        if agent_id and self.on_late_write is not None:
            follow_up = asyncio.ensure_future(self.on_late_write(agent_id))
            self._late_tasks.add(follow_up)
            follow_up.add_done_callback(self._late_tasks.discard)

    def transient_errors(self) -> Tuple[type, ...]:
        """Exception types that mean "collaborator unavailable"."""
        return (OSError,)

    # ------------------------------------------------------------------
    # Memory records
    # ------------------------------------------------------------------

    def prepare(self, record: MemoryRecord) -> MemoryRecord:
        record.importance = clamp_importance(record.importance, self.importance_range)
        record.strength = clamp_strength(record.strength)
        return record

    async def create(self, record: MemoryRecord) -> str:
        self.prepare(record)

        async def _work() -> str:
            await self._insert(record)
            self.index.add(record)
            return record.id

        return await self._write("create", _work, record.agent_id)

    async def delete(self, memory_id: str, agent_id: Optional[str] = None) -> bool:
        async def _work() -> bool:
            removed = await self._remove(memory_id)
            if removed is None:
                return False
            self.index.remove(removed)
            return True

        return await self._write("delete", _work, agent_id)

    async def update_strength(
        self, memory_id: str, new_strength: float, agent_id: Optional[str] = None
    ) -> bool:
        value = clamp_strength(new_strength)
        return await self._write(
            "update_strength", lambda: self._set_strength(memory_id, value), agent_id
        )

    async def get(self, memory_id: str) -> Optional[MemoryRecord]:
        return await self._read("get", lambda: self._get(memory_id))

    async def get_many(self, memory_ids: List[str]) -> List[MemoryRecord]:
        """Resolve ids through the store, sweeping the ones that no longer exist."""
        if not memory_ids:
            return []
        found = await self._read("get_many", lambda: self._get_many(list(memory_ids)))
        found_ids = {record.id for record in found}
        stale = [memory_id for memory_id in memory_ids if memory_id not in found_ids]
        if stale:
            self.index.discard_ids(stale)
        by_id = {record.id: record for record in found}
        return [by_id[memory_id] for memory_id in memory_ids if memory_id in by_id]

    async def find(
        self,
        context_filter: Optional[ContextFilter] = None,
        *,
        min_importance: Optional[int] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> List[MemoryRecord]:
        return await self._read(
            "find",
            lambda: self._find(
                context_filter or ContextFilter(),
                min_importance=min_importance,
                time_start=time_start,
                time_end=time_end,
            ),
        )

    async def decay_candidates(self, cutoff: datetime) -> List[MemoryRecord]:
        """Records created before ``cutoff`` that still have strength left."""
        return await self._read("decay_candidates", lambda: self._decay_candidates(cutoff))

    async def list_all(self) -> List[MemoryRecord]:
        return await self._read("list_all", self._list_all)

    async def rebuild_index(self) -> int:
        records = await self.list_all()
        return self.index.rebuild(records)

    # ------------------------------------------------------------------
    # Relationships and profiles
    # ------------------------------------------------------------------

    async def upsert_relationship(
        self,
        agent_id: str,
        counterparty_id: str,
        values: Dict[str, float],
        *,
        counterparty_type: str = DEFAULT_COUNTERPARTY_TYPE,
        interaction_at: datetime,
    ) -> RelationshipRecord:
        return await self._write(
            "upsert_relationship",
            lambda: self._upsert_relationship(
                agent_id, counterparty_id, counterparty_type, dict(values), interaction_at
            ),
            agent_id,
        )

    async def get_relationship(
        self,
        agent_id: str,
        counterparty_id: str,
        counterparty_type: str = DEFAULT_COUNTERPARTY_TYPE,
    ) -> Optional[RelationshipRecord]:
        return await self._read(
            "get_relationship",
            lambda: self._get_relationship(agent_id, counterparty_id, counterparty_type),
        )

    async def list_relationships(
        self,
        agent_id: str,
        limit: int = 10,
        counterparty_type: Optional[str] = DEFAULT_COUNTERPARTY_TYPE,
    ) -> List[RelationshipRecord]:
        return await self._read(
            "list_relationships",
            lambda: self._list_relationships(agent_id, max(1, int(limit)), counterparty_type),
        )

    async def get_profile(self, agent_id: str) -> Optional[AgentProfile]:
        return await self._read("get_profile", lambda: self._get_profile(agent_id))

    async def set_profile(self, profile: AgentProfile) -> None:
        await self._write(
            "set_profile", lambda: self._set_profile(profile), profile.agent_id
        )

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _insert(self, record: MemoryRecord) -> None: ...

    @abstractmethod
    async def _remove(self, memory_id: str) -> Optional[MemoryRecord]: ...

    @abstractmethod
    async def _set_strength(self, memory_id: str, value: float) -> bool: ...

    @abstractmethod
    async def _get(self, memory_id: str) -> Optional[MemoryRecord]: ...

    @abstractmethod
    async def _get_many(self, memory_ids: List[str]) -> List[MemoryRecord]: ...

    @abstractmethod
    async def _find(
        self,
        context_filter: ContextFilter,
        *,
        min_importance: Optional[int],
        time_start: Optional[datetime],
        time_end: Optional[datetime],
    ) -> List[MemoryRecord]: ...

    @abstractmethod
    async def _decay_candidates(self, cutoff: datetime) -> List[MemoryRecord]: ...

    @abstractmethod
    async def _list_all(self) -> List[MemoryRecord]: ...

    @abstractmethod
    async def _upsert_relationship(
        self,
        agent_id: str,
        counterparty_id: str,
        counterparty_type: str,
        values: Dict[str, float],
        interaction_at: datetime,
    ) -> RelationshipRecord: ...

    @abstractmethod
    async def _get_relationship(
        self, agent_id: str, counterparty_id: str, counterparty_type: str
    ) -> Optional[RelationshipRecord]: ...

    @abstractmethod
    async def _list_relationships(
        self, agent_id: str, limit: int, counterparty_type: Optional[str]
    ) -> List[RelationshipRecord]: ...

    @abstractmethod
    async def _get_profile(self, agent_id: str) -> Optional[AgentProfile]: ...

    @abstractmethod
    async def _set_profile(self, profile: AgentProfile) -> None: ...
