"""Runs continue across process restarts when state lives in SQLite."""

import pytest

from forgeflow.persistence import RunStatus, SQLiteWorkflowRepository, StepStatus

from conftest import build_engine

MINT_PAYLOAD = {
    "eligibility_id": "elig-123",
    "player_id": "player-1",
    "stake_key": "stake1",
    "payment_address": "addr_test1",
}


@pytest.mark.asyncio
async def test_sleeping_run_resumes_in_new_process(tmp_path, services, clock, chain, mint_service):
    db_path = tmp_path / "forgeflow.db"
    first = build_engine(SQLiteWorkflowRepository(db_path), services=services, clock=clock)
    result = await first.trigger("mint", "elig-123", MINT_PAYLOAD)
    await first.drain()
    first.repository.close()

    clock.advance(120)
    second = build_engine(SQLiteWorkflowRepository(db_path), services=services, clock=clock)
    assert await second.scheduler.fire_due() == [result.run_id]
    await second.drain()

    run = await second.repository.get_run(result.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.result["txHash"] == "tx-1"
    assert chain.calls["mint_nft"] == 1
    assert mint_service.calls["get_eligibility"] == 1


@pytest.mark.asyncio
async def test_crashed_worker_is_recovered_by_stale_sweep(tmp_path, services, clock, mint_service):
    db_path = tmp_path / "forgeflow.db"
    repo = SQLiteWorkflowRepository(db_path)
    first = build_engine(repo, services=services, clock=clock)
    result = await first.trigger("mint", "elig-123", MINT_PAYLOAD)
    await first.transport.drain(first.dispatcher.topic)

    # The worker claimed the run and started the first step, then died.
    await repo.claim_run(result.run_id, (RunStatus.PENDING,), clock())
    await repo.start_step(result.run_id, 0, "validate-eligibility", 1, clock())
    repo.close()

    clock.advance(700)
    second = build_engine(SQLiteWorkflowRepository(db_path), services=services, clock=clock)
    assert await second.scheduler.sweep_stale() == [result.run_id]
    await second.drain()

    run = await second.repository.get_run(result.run_id)
    assert run.status == RunStatus.SLEEPING
    steps = await second.repository.list_steps(result.run_id)
    validate = [s for s in steps if s.step_name == "validate-eligibility"]
    assert [s.status for s in validate] == [StepStatus.RETRYING, StepStatus.SUCCEEDED]
    assert validate[0].error["code"] == "INTERRUPTED"
