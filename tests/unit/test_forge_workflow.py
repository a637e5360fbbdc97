"""End-to-end forge runs against in-memory host services."""

import pytest

from forgeflow.persistence import RunStatus
from forgeflow.workflows.services import ForgeStatus, TransactionReceipt, TransactionStatus

FINGERPRINTS = [f"asset1cat{i}" for i in range(10)]


def _payload(**overrides):
    payload = {
        "forge_id": "forge-1",
        "forge_type": "category",
        "stake_key": "stake1",
        "input_fingerprints": FINGERPRINTS,
        "category_id": "science",
        "recipient_address": "addr_test1",
    }
    payload.update(overrides)
    return payload


async def _run(engine, clock, payload):
    result = await engine.trigger("forge", payload["forge_id"], payload)
    await engine.drain()
    for _ in range(2):
        clock.advance(120)
        await engine.scheduler.fire_due()
        await engine.drain()
    return await engine.repository.get_run(result.run_id)


@pytest.mark.asyncio
async def test_category_forge_completes(engine, clock, forge_service, chain):
    run = await _run(engine, clock, _payload())

    assert run.status == RunStatus.COMPLETED
    assert run.result == {
        "success": True,
        "forgeOperationId": "forge-op-1",
        "burnTxHash": "burn-1",
        "mintTxHash": "tx-2",
        "outputAssetFingerprint": "asset1ultimate_science_forge-1",
    }
    assert chain.calls["burn_nfts"] == 1
    assert chain.calls["mint_nft"] == 1
    assert len(chain.burns[0]) == 10
    assert chain.burns[0][0].asset_name_hex == "Science0".encode("utf-8").hex()

    request = chain.mint_requests[0]
    assert request.reference == "forge-mint:forge-1"
    assert request.metadata.image == "ipfs://placeholder_ultimate"
    assert request.metadata.description == "Ultimate NFT forged from 10 category NFTs"

    assert forge_service.burned == set(FINGERPRINTS)
    forged = forge_service.created["asset1ultimate_science_forge-1"]
    assert forged.tier == "ultimate"
    assert forged.type_code == "ultimate_science"
    assert forged.category_id == "science"
    assert forge_service.status_updates[-1]["status"] == ForgeStatus.CONFIRMED


@pytest.mark.asyncio
async def test_master_forge_requires_distinct_categories(engine, clock, forge_service):
    for i, fingerprint in enumerate(FINGERPRINTS):
        forge_service.nfts[fingerprint] = forge_service.nfts[fingerprint].model_copy(
            update={"category_id": f"cat{i}"}
        )
    run = await _run(
        engine, clock, _payload(forge_type="master", category_id=None)
    )
    assert run.status == RunStatus.COMPLETED
    forged = forge_service.created["asset1master_forge-1"]
    assert forged.tier == "master"
    assert forged.type_code == "master"


@pytest.mark.asyncio
async def test_season_forge_output(engine, clock, forge_service):
    run = await _run(
        engine, clock, _payload(forge_type="season", category_id=None, season_id="s1")
    )
    assert run.status == RunStatus.COMPLETED
    forged = forge_service.created["asset1seasonal_s1_forge-1"]
    assert forged.type_code == "seasonal_s1"
    assert forged.season_id == "s1"


@pytest.mark.parametrize(
    "payload, code, step",
    [
        (_payload(input_fingerprints=FINGERPRINTS[:9]), "INVALID_FORGE_REQUIREMENTS", "validate-nft-ownership"),
        (_payload(input_fingerprints=FINGERPRINTS[:9] + FINGERPRINTS[:1]), "INVALID_FORGE_REQUIREMENTS", "validate-nft-ownership"),
        (_payload(stake_key="stake2"), "INVALID_OWNERSHIP", "validate-nft-ownership"),
        (_payload(category_id="history"), "INVALID_FORGE_REQUIREMENTS", "validate-forge-requirements"),
        (_payload(forge_type="master", category_id=None), "INVALID_FORGE_REQUIREMENTS", "validate-forge-requirements"),
        (_payload(forge_type="season", category_id=None, season_id="s2"), "INVALID_FORGE_REQUIREMENTS", "validate-forge-requirements"),
    ],
    ids=["too-few", "duplicates", "not-owner", "wrong-category", "master-same-category", "wrong-season"],
)
@pytest.mark.asyncio
async def test_forge_validation_failures(engine, forge_service, chain, payload, code, step):
    result = await engine.trigger("forge", payload["forge_id"], payload)
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.status == RunStatus.FAILED
    assert run.error.code == code
    assert run.error.step_name == step
    assert forge_service.operations == {}
    assert chain.calls["burn_nfts"] == 0


@pytest.mark.asyncio
async def test_non_category_inputs_rejected(engine, forge_service):
    forge_service.nfts["asset1cat3"] = forge_service.nfts["asset1cat3"].model_copy(
        update={"tier": "ultimate"}
    )
    result = await engine.trigger("forge", "forge-1", _payload())
    await engine.drain()

    run = await engine.repository.get_run(result.run_id)
    assert run.error.code == "INVALID_FORGE_REQUIREMENTS"
    assert "non-category" in run.error.message


@pytest.mark.asyncio
async def test_transient_ownership_failure_is_retried(engine, clock, forge_service):
    forge_service.ownership_failures = 1
    run = await _run(engine, clock, _payload())

    assert run.status == RunStatus.COMPLETED
    assert forge_service.calls["validate_nft_ownership"] == 2


@pytest.mark.asyncio
async def test_existing_burn_is_reused(engine, clock, chain):
    chain.by_reference["forge-burn:forge-1"] = TransactionReceipt(
        tx_hash="burn-earlier", reference="forge-burn:forge-1"
    )
    run = await _run(engine, clock, _payload())

    assert run.status == RunStatus.COMPLETED
    assert chain.calls["burn_nfts"] == 0
    assert run.result["burnTxHash"] == "burn-earlier"


@pytest.mark.asyncio
async def test_rejected_burn_marks_forge_failed(engine, clock, forge_service, chain):
    async def rejected(tx_hash):
        chain.calls["get_transaction_status"] += 1
        return TransactionStatus.FAILED

    chain.get_transaction_status = rejected
    run = await _run(engine, clock, _payload())

    assert run.status == RunStatus.FAILED
    assert run.error.code == "BLOCKCHAIN_REJECTED"
    assert run.error.step_name == "check-burn-confirmation"
    assert chain.calls["mint_nft"] == 0
    assert forge_service.status_updates[-1] == {
        "id": "forge-op-1",
        "status": ForgeStatus.FAILED,
        "burn_tx_hash": "burn-1",
        "mint_tx_hash": None,
        "error": "Transaction burn-1 was rejected by the chain",
    }
    assert forge_service.burned == set()


@pytest.mark.asyncio
async def test_unconfirmed_burn_exhausts_attempts(engine, clock, chain):
    chain.pending_checks = 100
    run = await _run(engine, clock, _payload())

    assert run.status == RunStatus.FAILED
    assert run.error.code == "BLOCKCHAIN_TIMEOUT"
    assert run.error.attempt == 5
    assert chain.calls["get_transaction_status"] == 5
