"""
Runtime coordination for the NPC memory service.

This module provides:
1) Write-lane coordination (agent lane + bounded global lane).
2) Single-flight decay coordination.
3) A maintenance scheduler that runs decay on a fixed interval.

Instances are built by the app lifespan and passed to whoever needs them.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_agent_id(agent_id: Optional[str]) -> str:
    value = (agent_id or "").strip()
    return value if value else "default"


class WriteLaneCoordinator:
    """
    Two-layer write coordination:
    - Agent lane: serial writes for the same agent.
    - Global lane: bounded write concurrency across all agents.
    """

    def __init__(self, global_concurrency: Optional[int] = None) -> None:
        if global_concurrency is None:
            global_concurrency = _env_int(
                "RUNTIME_WRITE_GLOBAL_CONCURRENCY", 16, minimum=1
            )
        self._global_concurrency = max(1, int(global_concurrency))
        self._wait_warn_ms = _env_int("RUNTIME_WRITE_WAIT_WARN_MS", 2000, minimum=1)
        self._global_sem = asyncio.Semaphore(self._global_concurrency)
        self._agent_locks: Dict[str, asyncio.Lock] = {}
        self._agent_waiting: Dict[str, int] = {}
        self._global_active = 0
        self._guard = asyncio.Lock()

    async def _get_agent_lock(self, agent_id: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._agent_locks.get(agent_id)
            if lock is None:
                lock = asyncio.Lock()
                self._agent_locks[agent_id] = lock
            return lock

    async def run_write(
        self,
        *,
        agent_id: Optional[str],
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        lane = _normalize_agent_id(agent_id)
        agent_lock = await self._get_agent_lock(lane)

        wait_start = time.monotonic()
        self._agent_waiting[lane] = self._agent_waiting.get(lane, 0) + 1
        try:
            await agent_lock.acquire()
        finally:
            self._agent_waiting[lane] = max(0, self._agent_waiting.get(lane, 1) - 1)

        try:
            async with self._global_sem:
                waited_ms = int((time.monotonic() - wait_start) * 1000)
                if waited_ms >= self._wait_warn_ms:
                    logger.warning(
                        "Write %s for agent %s waited %dms for its lane",
                        operation,
                        lane,
                        waited_ms,
                    )
                self._global_active += 1
                try:
                    return await task()
                finally:
                    self._global_active -= 1
        finally:
            agent_lock.release()

    async def status(self) -> Dict[str, Any]:
        busy_agents = {
            agent: waiting for agent, waiting in self._agent_waiting.items() if waiting > 0
        }
        return {
            "global_concurrency": self._global_concurrency,
            "global_active": self._global_active,
            "agent_waiting_count": sum(busy_agents.values()),
            "agent_waiting_agents": len(busy_agents),
            "wait_warn_ms": self._wait_warn_ms,
        }


class DecayCoordinator:
    """Single-flight wrapper around one decay cycle."""

    def __init__(self) -> None:
        self._running = asyncio.Lock()
        self._runs = 0
        self._last_result: Dict[str, Any] = {
            "applied": False,
            "reason": "not_started",
        }

    async def run_decay(
        self,
        decay_fn: Callable[[], Awaitable[Dict[str, Any]]],
        *,
        reason: str = "runtime",
    ) -> Dict[str, Any]:
        if self._running.locked():
            return {"applied": False, "reason": "already_running"}
        async with self._running:
            started_at = _utc_iso_now()
            try:
                payload = await decay_fn()
                if not isinstance(payload, dict):
                    payload = {"applied": False, "raw": payload}
                payload.setdefault("degraded", False)
            except Exception as exc:
                logger.exception("Decay cycle failed")
                payload = {
                    "applied": False,
                    "degraded": True,
                    "reason": str(exc),
                }
            payload["trigger"] = reason or "runtime"
            payload["started_at"] = started_at
            self._runs += 1
            self._last_result = payload
            return dict(payload)

    @property
    def running(self) -> bool:
        return self._running.locked()

    async def status(self) -> Dict[str, Any]:
        return {
            **dict(self._last_result),
            "running": self.running,
            "runs": self._runs,
        }


class MaintenanceScheduler:
    """Runs decay every ``interval_seconds`` in one background task."""

    def __init__(
        self,
        coordinator: DecayCoordinator,
        decay_fn: Callable[[], Awaitable[Dict[str, Any]]],
        interval_seconds: float,
    ) -> None:
        self.coordinator = coordinator
        self._decay_fn = decay_fn
        self.interval_seconds = max(1.0, float(interval_seconds))
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.started:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def shutdown(self) -> None:
        self._stop.set()
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
                return
            except asyncio.TimeoutError:
                pass
            result = await self.coordinator.run_decay(self._decay_fn, reason="scheduler")
            logger.info("Scheduled decay finished: applied=%s", result.get("applied"))

    def status(self) -> Dict[str, Any]:
        return {"started": self.started, "interval_seconds": self.interval_seconds}


class RuntimeState:
    def __init__(self, write_lanes: Optional[WriteLaneCoordinator] = None) -> None:
        self.write_lanes = write_lanes or WriteLaneCoordinator()
        self.decay = DecayCoordinator()
        self.scheduler: Optional[MaintenanceScheduler] = None

    async def start_scheduler(
        self,
        decay_fn: Callable[[], Awaitable[Dict[str, Any]]],
        interval_seconds: float,
    ) -> None:
        self.scheduler = MaintenanceScheduler(self.decay, decay_fn, interval_seconds)
        await self.scheduler.start()

    async def shutdown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.shutdown()
