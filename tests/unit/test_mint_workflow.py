"""End-to-end mint runs against in-memory host services."""

from datetime import datetime, timedelta, timezone

import pytest

from forgeflow.persistence import RunStatus, StepStatus
from forgeflow.workflows.services import MintStatus

MINT_PAYLOAD = {
    "eligibility_id": "elig-123",
    "player_id": "player-1",
    "stake_key": "stake1",
    "payment_address": "addr_test1",
}


async def _run_to_completion(engine, clock, payload=MINT_PAYLOAD):
    result = await engine.trigger("mint", payload["eligibility_id"], payload)
    await engine.drain()
    clock.advance(120)
    await engine.scheduler.fire_due()
    await engine.drain()
    return await engine.repository.get_run(result.run_id)


@pytest.mark.asyncio
async def test_mint_survives_transient_failures(engine, clock, mint_service, chain):
    mint_service.reserve_failures = 2
    chain.pending_checks = 1

    result = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.status == RunStatus.SLEEPING
    assert chain.calls["mint_nft"] == 1
    assert mint_service.calls["reserve_nft"] == 3

    # A second trigger while the run sleeps maps to the same run.
    duplicate = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    assert not duplicate.created
    assert duplicate.run_id == result.run_id

    clock.advance(120)
    assert await engine.scheduler.fire_due() == [result.run_id]
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.result == {
        "success": True,
        "mintOperationId": "mint-op-1",
        "txHash": "tx-1",
        "assetFingerprint": "asset1science1",
    }
    assert chain.calls["mint_nft"] == 1
    assert chain.calls["get_transaction_status"] == 2
    assert "elig-123" in mint_service.used
    assert [u[1] for u in mint_service.status_updates] == [
        MintStatus.PENDING,
        MintStatus.CONFIRMED,
    ]

    steps = await engine.repository.list_steps(run.run_id)
    reserve = [s for s in steps if s.step_name == "reserve-nft"]
    assert [s.status for s in reserve] == [
        StepStatus.RETRYING,
        StepStatus.RETRYING,
        StepStatus.SUCCEEDED,
    ]
    succeeded = [s.step_name for s in steps if s.status == StepStatus.SUCCEEDED]
    assert len(succeeded) == len(set(succeeded)) == 11
    assert succeeded[-1] == "complete"


@pytest.mark.asyncio
async def test_mint_submits_expected_metadata(engine, clock, mint_service, chain):
    run = await _run_to_completion(engine, clock)
    assert run.status == RunStatus.COMPLETED

    request = chain.mint_requests[0]
    assert request.reference == "mint:elig-123"
    assert request.policy_id == "policy123"
    assert request.asset_name == "Science1"
    assert request.recipient_address == "addr_test1"
    assert request.metadata.image == "ipfs://cid1"
    assert request.metadata.description == "Science1 - TriviaNFT Category NFT"
    assert request.metadata.attributes == [{"trait_type": "rarity", "value": "common"}]

    nft = mint_service.player_nfts["asset1science1"]
    assert nft.stake_key == "stake1"
    assert nft.category_id == "science"
    assert nft.source_operation_id == "mint-op-1"


@pytest.mark.asyncio
async def test_completed_mint_is_not_repeated(engine, clock, chain):
    run = await _run_to_completion(engine, clock)
    again = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    await engine.drain()

    assert not again.created
    assert again.run_id == run.run_id
    assert again.status == RunStatus.COMPLETED
    assert chain.calls["mint_nft"] == 1


@pytest.mark.asyncio
async def test_submission_is_not_repeated_after_replay(engine, clock, mint_service, chain):
    """The chain already holds a transaction for the reference."""
    result = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    await engine.drain()
    assert chain.calls["mint_nft"] == 1

    # Forget the recorded outcome of the submit step as if the worker died
    # between the chain call and the database write.
    steps = await engine.repository.list_steps(result.run_id)
    submit = next(s for s in steps if s.step_name == "submit-blockchain-transaction")
    engine.repository._steps = [s for s in engine.repository._steps if s.id != submit.id]
    engine.repository._timers = []
    run = await engine.repository.get_run(result.run_id)
    run.status = RunStatus.PENDING
    run.current_step = 4
    await engine.repository.save_run(run)

    await engine.orchestrator.advance(result.run_id)
    assert chain.calls["mint_nft"] == 1
    assert chain.calls["find_transaction"] == 2


@pytest.mark.parametrize(
    "payload, eligibility_update",
    [
        ({**MINT_PAYLOAD, "eligibility_id": "missing"}, None),
        ({**MINT_PAYLOAD, "player_id": "player-2"}, None),
        (MINT_PAYLOAD, {"status": "used"}),
        (MINT_PAYLOAD, {"expires_at": datetime(2000, 1, 1, tzinfo=timezone.utc)}),
    ],
    ids=["not-found", "wrong-player", "used", "expired"],
)
@pytest.mark.asyncio
async def test_invalid_eligibility_fails_without_reserving(
    engine, mint_service, payload, eligibility_update
):
    if eligibility_update:
        current = mint_service.eligibilities["elig-123"]
        mint_service.eligibilities["elig-123"] = current.model_copy(update=eligibility_update)

    result = await engine.trigger("mint", payload["eligibility_id"], payload)
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.status == RunStatus.FAILED
    assert run.error.code == "INVALID_ELIGIBILITY"
    assert run.error.step_name == "validate-eligibility"
    assert mint_service.calls["reserve_nft"] == 0
    assert mint_service.calls["get_eligibility"] == 1


@pytest.mark.parametrize("expires_in, status", [(30, RunStatus.SLEEPING), (-30, RunStatus.FAILED)])
@pytest.mark.asyncio
async def test_eligibility_expiry_uses_engine_clock(
    engine, clock, mint_service, expires_in, status
):
    # The engine clock sits in 2025, years before wall-clock time.
    current = mint_service.eligibilities["elig-123"]
    mint_service.eligibilities["elig-123"] = current.model_copy(
        update={"expires_at": clock.now + timedelta(seconds=expires_in)}
    )

    result = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.status == status


@pytest.mark.asyncio
async def test_out_of_stock_fails(engine, mint_service):
    mint_service.catalog["science"] = []
    result = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.status == RunStatus.FAILED
    assert run.error.code == "INSUFFICIENT_STOCK"
    assert run.error.step_name == "check-stock-availability"


@pytest.mark.asyncio
async def test_rejected_transaction_marks_operation_failed(engine, mint_service, chain):
    chain.reject_submissions = True
    result = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.status == RunStatus.FAILED
    assert run.error.code == "BLOCKCHAIN_REJECTED"
    assert run.error.step_name == "submit-blockchain-transaction"
    assert chain.calls["mint_nft"] == 1
    assert mint_service.status_updates == [
        ("mint-op-1", MintStatus.FAILED, None, "Insufficient funds")
    ]
    assert "elig-123" not in mint_service.used

    # A failed run does not block a fresh attempt for the same eligibility.
    chain.reject_submissions = False
    retry = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    assert retry.created
    assert retry.run_id != result.run_id


@pytest.mark.asyncio
async def test_missing_policy_id_is_a_configuration_error(make_engine, services, mint_service):
    from forgeflow.persistence import InMemoryWorkflowRepository

    engine = make_engine(
        InMemoryWorkflowRepository(),
        services=services.model_copy(update={"nft_policy_id": None}),
    )
    result = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.status == RunStatus.FAILED
    assert run.error.code == "CONFIGURATION_ERROR"
    assert run.error.step_name == "create-mint-operation"
