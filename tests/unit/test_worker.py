import pytest

from forgeflow.contracts import WorkItem
from forgeflow.persistence import InMemoryWorkflowRepository, RunStatus
from forgeflow.transports import InMemoryTransport
from forgeflow.worker import WorkflowWorker
from forgeflow.workflows import WorkflowServices

from conftest import POLICY_ID, build_engine

MINT_PAYLOAD = {
    "eligibility_id": "elig-123",
    "player_id": "player-1",
    "stake_key": "stake1",
    "payment_address": "addr_test1",
}


class ExplodingOrchestrator:
    def __init__(self):
        self.calls = 0

    async def advance(self, run_id):
        self.calls += 1
        raise ConnectionError("database unavailable")


@pytest.mark.asyncio
async def test_failed_pass_is_redelivered():
    transport = InMemoryTransport()
    worker = WorkflowWorker(transport, ExplodingOrchestrator(), topic="work", max_deliveries=3)
    item = WorkItem(kind="trigger", run_id="run-1")

    await worker.handle(("work", item.to_json()), item)
    pending = transport.pending("work")
    assert len(pending) == 1
    assert pending[0].run_id == "run-1"
    assert pending[0].delivery_attempt == 2


@pytest.mark.asyncio
async def test_item_dropped_after_max_deliveries():
    transport = InMemoryTransport()
    worker = WorkflowWorker(transport, ExplodingOrchestrator(), topic="work", max_deliveries=3)
    item = WorkItem(kind="trigger", run_id="run-1", delivery_attempt=3)

    await worker.handle(("work", item.to_json()), item)
    assert transport.pending("work") == []


class FlakyRepository(InMemoryWorkflowRepository):
    """Fails the first ``save_run`` as if the database dropped the connection."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def save_run(self, run):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        await super().save_run(run)


@pytest.mark.asyncio
async def test_redelivery_resumes_run_after_storage_failure(services, clock, mint_service):
    repository = FlakyRepository()
    engine = build_engine(repository, services=services, clock=clock)
    topic = engine.dispatcher.topic
    worker = WorkflowWorker(engine.transport, engine.orchestrator, topic=topic)
    result = await engine.trigger("mint", "elig-123", MINT_PAYLOAD)

    [item] = await engine.transport.drain(topic)
    await worker.handle((topic, item.to_json()), item)

    run = await repository.get_run(result.run_id)
    assert run.status == RunStatus.PENDING
    [redelivered] = await engine.transport.drain(topic)
    assert redelivered.delivery_attempt == 2

    await worker.handle((topic, redelivered.to_json()), redelivered)

    run = await repository.get_run(result.run_id)
    assert run.status == RunStatus.SLEEPING
    assert run.current_step == 5
    assert mint_service.calls["get_eligibility"] == 1
    assert engine.transport.pending(topic) == []


@pytest.mark.asyncio
async def test_worker_runs_mint_to_completion(mint_service, forge_service, chain, clock):
    services = WorkflowServices(
        mint_service=mint_service,
        forge_service=forge_service,
        chain=chain,
        nft_policy_id=POLICY_ID,
        confirmation_wait=0,
    )
    engine = build_engine(InMemoryWorkflowRepository(), services=services, clock=clock)
    worker = WorkflowWorker(
        engine.transport,
        engine.orchestrator,
        scheduler=engine.scheduler,
        concurrency=2,
        poll_interval=0.02,
        topic=engine.dispatcher.topic,
    )
    result = await engine.trigger(
        "mint",
        "elig-123",
        {
            "eligibility_id": "elig-123",
            "player_id": "player-1",
            "stake_key": "stake1",
            "payment_address": "addr_test1",
        },
    )

    await worker.start(lifespan=1.0)

    run = await engine.repository.get_run(result.run_id)
    assert run.status == RunStatus.COMPLETED
    assert chain.calls["mint_nft"] == 1
