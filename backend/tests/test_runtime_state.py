import asyncio

import pytest

from runtime_state import DecayCoordinator, RuntimeState, WriteLaneCoordinator


@pytest.mark.asyncio
async def test_same_agent_writes_are_serialized() -> None:
    lanes = WriteLaneCoordinator(global_concurrency=4)
    active = 0
    peak = 0

    async def _task() -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    await asyncio.gather(
        *[lanes.run_write(agent_id="npc-1", operation="remember", task=_task) for _ in range(5)]
    )
    assert peak == 1


@pytest.mark.asyncio
async def test_different_agents_share_the_global_lane() -> None:
    lanes = WriteLaneCoordinator(global_concurrency=2)
    active = 0
    peak = 0

    async def _task() -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1

    await asyncio.gather(
        *[
            lanes.run_write(agent_id=f"npc-{i}", operation="remember", task=_task)
            for i in range(6)
        ]
    )
    assert peak == 2
    status = await lanes.status()
    assert status["global_active"] == 0
    assert status["agent_waiting_count"] == 0


@pytest.mark.asyncio
async def test_write_lane_releases_after_failure() -> None:
    lanes = WriteLaneCoordinator(global_concurrency=1)

    async def _boom() -> None:
        raise ValueError("bad write")

    async def _ok() -> str:
        return "done"

    with pytest.raises(ValueError):
        await lanes.run_write(agent_id="npc-1", operation="remember", task=_boom)
    assert await lanes.run_write(agent_id="npc-1", operation="remember", task=_ok) == "done"


@pytest.mark.asyncio
async def test_decay_is_single_flight() -> None:
    coordinator = DecayCoordinator()
    release = asyncio.Event()
    calls = 0

    async def _decay():
        nonlocal calls
        calls += 1
        await release.wait()
        return {"applied": True, "deleted": 2}

    first = asyncio.create_task(coordinator.run_decay(_decay, reason="scheduler"))
    await asyncio.sleep(0)
    assert coordinator.running is True
    second = await coordinator.run_decay(_decay, reason="api")
    release.set()
    result = await first

    assert second == {"applied": False, "reason": "already_running"}
    assert calls == 1
    assert result["applied"] is True
    assert result["trigger"] == "scheduler"
    assert result["degraded"] is False
    status = await coordinator.status()
    assert status["runs"] == 1
    assert status["running"] is False


@pytest.mark.asyncio
async def test_decay_failure_is_reported_as_degraded() -> None:
    coordinator = DecayCoordinator()

    async def _decay():
        raise RuntimeError("store exploded")

    result = await coordinator.run_decay(_decay)

    assert result["applied"] is False
    assert result["degraded"] is True
    assert result["reason"] == "store exploded"
    assert (await coordinator.status())["reason"] == "store exploded"


@pytest.mark.asyncio
async def test_scheduler_runs_decay_and_shuts_down() -> None:
    runtime = RuntimeState()
    ran = asyncio.Event()

    async def _decay():
        ran.set()
        return {"applied": True}

    await runtime.start_scheduler(_decay, interval_seconds=1.0)
    assert runtime.scheduler.status() == {"started": True, "interval_seconds": 1.0}

    await asyncio.wait_for(ran.wait(), timeout=3.0)
    await runtime.shutdown()

    assert runtime.scheduler.started is False
    assert (await runtime.decay.status())["trigger"] == "scheduler"
