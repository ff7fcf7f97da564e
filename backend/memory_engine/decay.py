"""
Strength decay for stored memories.

One call to ``DecayEngine.run_cycle`` is one maintenance cycle:

- backends with ``retention_purge`` first drop everything older than the
  retention horizon, whatever its strength
- every record older than ``min_age_hours`` with strength left loses
  ``decay_rate``; at or below ``delete_threshold`` it is deleted instead

Strength only ever goes down and a deleted record stays deleted. Cycles never
overlap: a call made while one is running returns ``already_running``. A record
that fails to update is logged and skipped. Scheduling lives outside this module.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set

from .backend import MemoryBackend
from .errors import MemoryEngineError
from .models import ContextFilter, MemoryRecord, as_utc, utc_now

logger = logging.getLogger(__name__)


class DecayEngine:
    def __init__(
        self,
        backend: MemoryBackend,
        *,
        decay_rate: float = 0.01,
        delete_threshold: float = 0.1,
        min_age_hours: float = 24.0,
        retention_days: float = 30.0,
    ):
        self.backend = backend
        self.decay_rate = max(0.0, float(decay_rate))
        self.delete_threshold = max(0.0, float(delete_threshold))
        self.min_age_hours = max(0.0, float(min_age_hours))
        self.retention_days = max(0.0, float(retention_days))
        self._running = asyncio.Lock()

    def next_strength(self, current: float) -> float:
        return max(0.0, float(current) - self.decay_rate)

    @property
    def running(self) -> bool:
        return self._running.locked()

    async def run_cycle(self, reference_time: Optional[datetime] = None) -> Dict[str, Any]:
        """Run one cycle; a call made while another is in flight is refused."""
        if self._running.locked():
            return {"applied": False, "reason": "already_running"}
        async with self._running:
            return await self._run_cycle(reference_time)

    async def _run_cycle(self, reference_time: Optional[datetime]) -> Dict[str, Any]:
        now = as_utc(reference_time) or utc_now()
        stats: Dict[str, Any] = {
            "applied": True,
            "reference_time": now.isoformat(),
            "purged": 0,
            "scanned": 0,
            "updated": 0,
            "deleted": 0,
            "failed": 0,
        }
        affected: Set[str] = set()

        if self.backend.retention_purge and self.retention_days > 0:
            horizon = now - timedelta(days=self.retention_days)
            expired = await self.backend.find(ContextFilter(), time_end=horizon)
            for record in expired:
                if await self._delete(record, stats):
                    stats["purged"] += 1
                    affected.add(record.agent_id)

        cutoff = now - timedelta(hours=self.min_age_hours)
        candidates = await self.backend.decay_candidates(cutoff)
        stats["scanned"] = len(candidates)
        for record in candidates:
            new_strength = self.next_strength(record.strength)
            if new_strength <= self.delete_threshold:
                if await self._delete(record, stats):
                    stats["deleted"] += 1
                    affected.add(record.agent_id)
                continue
            try:
                if await self.backend.update_strength(
                    record.id, new_strength, agent_id=record.agent_id
                ):
                    stats["updated"] += 1
                    affected.add(record.agent_id)
            except MemoryEngineError as exc:
                stats["failed"] += 1
                logger.warning(
                    "Decay update failed for memory %s (agent %s): %s",
                    record.id,
                    record.agent_id,
                    exc,
                )

        stats["index_keys_pruned"] = self.backend.index.prune()
        stats["affected_agents"] = sorted(affected)
        logger.info(
            "Decay cycle: scanned=%d updated=%d deleted=%d purged=%d failed=%d",
            stats["scanned"],
            stats["updated"],
            stats["deleted"],
            stats["purged"],
            stats["failed"],
        )
        return stats

    async def _delete(self, record: MemoryRecord, stats: Dict[str, Any]) -> bool:
        try:
            return await self.backend.delete(record.id, agent_id=record.agent_id)
        except MemoryEngineError as exc:
            stats["failed"] += 1
            logger.warning(
                "Decay delete failed for memory %s (agent %s): %s",
                record.id,
                record.agent_id,
                exc,
            )
            return False
