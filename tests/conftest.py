"""Shared fixtures: a controllable clock and in-memory host services."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from forgeflow.contracts import TriggerRequest, TriggerResult
from forgeflow.dispatch import EventDispatcher
from forgeflow.errors import ErrorCode
from forgeflow.orchestrator import WorkflowOrchestrator
from forgeflow.persistence import InMemoryWorkflowRepository, WorkflowRepository
from forgeflow.registry import WorkflowRegistry
from forgeflow.scheduler import SleepScheduler
from forgeflow.security import CanonicalMessage, TokenService
from forgeflow.transports import InMemoryTransport
from forgeflow.utils.retry import RetryPolicy
from forgeflow.workflows import WorkflowServices, register_defaults
from forgeflow.workflows.services import (
    BlockchainError,
    BurnAsset,
    Eligibility,
    ForgeOperation,
    ForgeType,
    MintOperation,
    NFTCatalogItem,
    NFTMintRequest,
    PlayerNFT,
    TransactionReceipt,
    TransactionStatus,
)

SIGNING_KEY = "test-signing-key-0123456789abcdef"
INTERNAL_KEY = "test-internal-key-0123456789abcdef"
POLICY_ID = "policy123"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeMintService:
    def __init__(self) -> None:
        self.eligibilities: Dict[str, Eligibility] = {}
        self.catalog: Dict[str, List[NFTCatalogItem]] = defaultdict(list)
        self.reservations: Dict[str, NFTCatalogItem] = {}
        self.operations: Dict[str, MintOperation] = {}
        self.status_updates: List[tuple] = []
        self.used: set[str] = set()
        self.player_nfts: Dict[str, PlayerNFT] = {}
        self.calls: Counter = Counter()
        self.reserve_failures = 0

    async def get_eligibility(self, eligibility_id: str) -> Optional[Eligibility]:
        self.calls["get_eligibility"] += 1
        return self.eligibilities.get(eligibility_id)

    async def count_available_nfts(self, category_id: str) -> int:
        self.calls["count_available_nfts"] += 1
        return len(self.catalog[category_id])

    async def reserve_nft(
        self, category_id: str, eligibility_id: str
    ) -> Optional[NFTCatalogItem]:
        self.calls["reserve_nft"] += 1
        if self.reserve_failures > 0:
            self.reserve_failures -= 1
            raise BlockchainError("database node unavailable", code=ErrorCode.NODE_UNAVAILABLE)
        if eligibility_id in self.reservations:
            return self.reservations[eligibility_id]
        if not self.catalog[category_id]:
            return None
        item = self.catalog[category_id].pop(0)
        self.reservations[eligibility_id] = item
        return item

    async def create_mint_operation(
        self, eligibility_id, catalog_id, player_id, stake_key, policy_id
    ) -> MintOperation:
        self.calls["create_mint_operation"] += 1
        operation = self.operations.get(eligibility_id)
        if operation is None:
            operation = MintOperation(
                id=f"mint-op-{len(self.operations) + 1}",
                eligibility_id=eligibility_id,
                catalog_id=catalog_id,
                player_id=player_id,
                stake_key=stake_key,
                policy_id=policy_id,
            )
            self.operations[eligibility_id] = operation
        return operation

    async def update_mint_status(self, mint_operation_id, status, tx_hash=None, error=None) -> None:
        self.calls["update_mint_status"] += 1
        self.status_updates.append((mint_operation_id, status, tx_hash, error))

    async def mark_eligibility_used(self, eligibility_id: str) -> None:
        self.calls["mark_eligibility_used"] += 1
        self.used.add(eligibility_id)

    async def create_player_nft(self, nft: PlayerNFT) -> None:
        self.calls["create_player_nft"] += 1
        self.player_nfts.setdefault(nft.asset_fingerprint, nft)


class FakeForgeService:
    def __init__(self) -> None:
        self.nfts: Dict[str, PlayerNFT] = {}
        self.operations: Dict[str, ForgeOperation] = {}
        self.status_updates: List[dict] = []
        self.burned: set[str] = set()
        self.created: Dict[str, PlayerNFT] = {}
        self.calls: Counter = Counter()
        self.ownership_failures = 0

    async def validate_nft_ownership(self, stake_key: str, fingerprints: List[str]) -> bool:
        self.calls["validate_nft_ownership"] += 1
        if self.ownership_failures > 0:
            self.ownership_failures -= 1
            raise ConnectionError("connection reset by peer")
        return all(
            fp in self.nfts and self.nfts[fp].stake_key == stake_key for fp in fingerprints
        )

    async def get_nfts_by_fingerprints(self, fingerprints: List[str]) -> List[PlayerNFT]:
        self.calls["get_nfts_by_fingerprints"] += 1
        return [self.nfts[fp] for fp in fingerprints if fp in self.nfts]

    async def create_forge_operation(
        self, forge_id, forge_type, stake_key, fingerprints, category_id=None, season_id=None
    ) -> ForgeOperation:
        self.calls["create_forge_operation"] += 1
        operation = self.operations.get(forge_id)
        if operation is None:
            operation = ForgeOperation(
                id=f"forge-op-{len(self.operations) + 1}",
                forge_id=forge_id,
                type=ForgeType(forge_type),
                stake_key=stake_key,
                input_fingerprints=list(fingerprints),
                category_id=category_id,
                season_id=season_id,
            )
            self.operations[forge_id] = operation
        return operation

    async def update_forge_status(self, forge_operation_id, status, **fields) -> None:
        self.calls["update_forge_status"] += 1
        self.status_updates.append({"id": forge_operation_id, "status": status, **fields})

    async def mark_nfts_burned(self, fingerprints: List[str]) -> None:
        self.calls["mark_nfts_burned"] += 1
        self.burned.update(fingerprints)

    async def create_player_nft(self, nft: PlayerNFT) -> None:
        self.calls["create_player_nft"] += 1
        self.created.setdefault(nft.asset_fingerprint, nft)


class FakeChain:
    """Blockchain client keyed by submission reference."""

    def __init__(self) -> None:
        self.by_reference: Dict[str, TransactionReceipt] = {}
        self.mint_requests: List[NFTMintRequest] = []
        self.burns: List[List[BurnAsset]] = []
        self.calls: Counter = Counter()
        self.pending_checks = 0
        self.reject_submissions = False

    async def find_transaction(self, reference: str) -> Optional[TransactionReceipt]:
        self.calls["find_transaction"] += 1
        return self.by_reference.get(reference)

    async def mint_nft(self, request: NFTMintRequest) -> TransactionReceipt:
        self.calls["mint_nft"] += 1
        if self.reject_submissions:
            raise BlockchainError(
                "Insufficient funds", code=ErrorCode.BLOCKCHAIN_REJECTED, retryable=False
            )
        self.mint_requests.append(request)
        receipt = TransactionReceipt(
            tx_hash=f"tx-{len(self.by_reference) + 1}",
            reference=request.reference,
            policy_id=request.policy_id,
            asset_fingerprint=f"asset1{request.asset_name.lower()}",
            token_name=request.asset_name,
        )
        self.by_reference[request.reference] = receipt
        return receipt

    async def burn_nfts(self, assets: List[BurnAsset], reference: str) -> TransactionReceipt:
        self.calls["burn_nfts"] += 1
        self.burns.append(list(assets))
        receipt = TransactionReceipt(tx_hash=f"burn-{len(self.by_reference) + 1}", reference=reference)
        self.by_reference[reference] = receipt
        return receipt

    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        self.calls["get_transaction_status"] += 1
        if self.pending_checks > 0:
            self.pending_checks -= 1
            return TransactionStatus.PENDING
        return TransactionStatus.CONFIRMED


@dataclass
class Engine:
    """Engine components wired the way ``create_runtime`` wires them."""

    clock: FakeClock
    repository: WorkflowRepository
    transport: InMemoryTransport
    tokens: TokenService
    registry: WorkflowRegistry
    dispatcher: EventDispatcher
    scheduler: SleepScheduler
    orchestrator: WorkflowOrchestrator

    def sign(self, definition_name: str, key: str, payload: dict) -> str:
        return self.tokens.sign_trigger(
            CanonicalMessage(
                definition_name=definition_name, idempotency_key=key, payload=payload
            )
        )

    async def trigger(self, definition_name: str, key: str, payload: dict) -> TriggerResult:
        return await self.dispatcher.trigger(
            TriggerRequest(
                definition_name=definition_name, idempotency_key=key, payload=payload
            ),
            self.sign(definition_name, key, payload),
        )

    async def drain(self) -> list[str]:
        """Advance every queued work item once; return the run ids processed."""
        items = await self.transport.drain(self.dispatcher.topic)
        processed = [item.run_id for item in items]
        for run_id in processed:
            await self.orchestrator.advance(run_id)
        return processed


def build_engine(
    repository: WorkflowRepository,
    services: Optional[WorkflowServices] = None,
    clock: Optional[FakeClock] = None,
    registry: Optional[WorkflowRegistry] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> Engine:
    clock = clock or FakeClock()
    registry = registry or register_defaults(WorkflowRegistry())
    transport = InMemoryTransport(poll_delay=0.01)
    tokens = TokenService(SIGNING_KEY, INTERNAL_KEY)
    dispatcher = EventDispatcher(repository, transport, tokens, registry=registry)
    scheduler = SleepScheduler(repository, dispatcher, clock=clock)
    orchestrator = WorkflowOrchestrator(
        repository,
        registry=registry,
        deps=services,
        retry_policy=retry_policy or RetryPolicy(backoff_base=0.0),
        scheduler=scheduler,
        clock=clock,
    )
    return Engine(
        clock=clock,
        repository=repository,
        transport=transport,
        tokens=tokens,
        registry=registry,
        dispatcher=dispatcher,
        scheduler=scheduler,
        orchestrator=orchestrator,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mint_service() -> FakeMintService:
    service = FakeMintService()
    service.eligibilities["elig-123"] = Eligibility(
        id="elig-123", player_id="player-1", category_id="science"
    )
    service.catalog["science"] = [
        NFTCatalogItem(
            id=f"nft-{i}",
            category_id="science",
            name=f"Science{i}",
            ipfs_cid=f"cid{i}",
            attributes={"rarity": "common"},
        )
        for i in range(1, 4)
    ]
    return service


@pytest.fixture
def forge_service() -> FakeForgeService:
    service = FakeForgeService()
    for i in range(10):
        fingerprint = f"asset1cat{i}"
        service.nfts[fingerprint] = PlayerNFT(
            stake_key="stake1",
            policy_id=POLICY_ID,
            asset_fingerprint=fingerprint,
            token_name=f"Science{i}",
            tier="category",
            category_id="science",
            season_id="s1",
        )
    return service


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def services(mint_service, forge_service, chain) -> WorkflowServices:
    return WorkflowServices(
        mint_service=mint_service,
        forge_service=forge_service,
        chain=chain,
        nft_policy_id=POLICY_ID,
        confirmation_wait=120,
    )


@pytest.fixture
def engine(services, clock) -> Engine:
    return build_engine(InMemoryWorkflowRepository(), services=services, clock=clock)


@pytest.fixture
def make_engine(services, clock):
    """Factory for an engine over a given repository."""

    def factory(repository: WorkflowRepository, **kwargs) -> Engine:
        kwargs.setdefault("services", services)
        kwargs.setdefault("clock", clock)
        return build_engine(repository, **kwargs)

    return factory
