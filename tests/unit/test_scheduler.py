from datetime import timedelta

import pytest

from forgeflow.persistence import InMemoryWorkflowRepository, RunStatus, TimerKind
from forgeflow.scheduler import SleepScheduler


@pytest.mark.asyncio
async def test_schedule_and_poll_due(clock):
    repo = InMemoryWorkflowRepository()
    scheduler = SleepScheduler(repo, clock=clock)
    run, _ = await repo.acquire_run("mint", "k", {}, clock())

    await scheduler.schedule(run, 5, clock() + timedelta(seconds=120))
    await scheduler.schedule(run, 6, clock() + timedelta(seconds=60), kind=TimerKind.RETRY)
    assert (await repo.get_run(run.run_id)).status == RunStatus.SLEEPING

    assert await scheduler.poll_due() == []
    clock.advance(200)
    # Two due timers of the same run wake it once.
    assert await scheduler.poll_due() == [run.run_id]
    assert await scheduler.poll_due() == []


@pytest.mark.asyncio
async def test_fire_due_without_dispatcher_raises(clock):
    repo = InMemoryWorkflowRepository()
    scheduler = SleepScheduler(repo, clock=clock)
    run, _ = await repo.acquire_run("mint", "k", {}, clock())
    await scheduler.schedule(run, 0, clock())

    with pytest.raises(RuntimeError):
        await scheduler.fire_due()


@pytest.mark.asyncio
async def test_fire_due_publishes_resume(engine, clock):
    run, _ = await engine.repository.acquire_run("mint", "k", {}, clock())
    await engine.scheduler.schedule(run, 5, clock())

    assert await engine.scheduler.fire_due() == [run.run_id]
    pending = engine.transport.pending(engine.dispatcher.topic)
    assert [(i.kind, i.run_id) for i in pending] == [("resume", run.run_id)]


@pytest.mark.asyncio
async def test_sweep_stale_redispatches_lost_runs(engine, clock):
    lost, _ = await engine.repository.acquire_run("mint", "lost", {}, clock())
    clock.advance(601)
    fresh, _ = await engine.repository.acquire_run("mint", "fresh", {}, clock())

    assert await engine.scheduler.sweep_stale() == [lost.run_id]
    pending = engine.transport.pending(engine.dispatcher.topic)
    assert [i.run_id for i in pending] == [lost.run_id]


@pytest.mark.asyncio
async def test_run_loop_survives_errors(clock):
    repo = InMemoryWorkflowRepository()
    scheduler = SleepScheduler(repo, clock=clock)
    run, _ = await repo.acquire_run("mint", "k", {}, clock())
    await scheduler.schedule(run, 0, clock())

    # No dispatcher: every poll raises, the loop logs and keeps going.
    await scheduler.run(poll_interval=0.01, lifespan=0.05)
