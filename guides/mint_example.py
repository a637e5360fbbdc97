"""Example running a mint workflow end to end with forgeflow.

Host services are stubbed in memory; a real deployment passes its own
database and chain clients in ``WorkflowServices``.
"""

import asyncio

from forgeflow.config import ForgeflowConfig, SecurityConfig
from forgeflow.contracts import TriggerRequest
from forgeflow.runtime import create_runtime
from forgeflow.security import CanonicalMessage
from forgeflow.workflows import WorkflowServices
from forgeflow.workflows.services import (
    Eligibility,
    MintOperation,
    NFTCatalogItem,
    TransactionReceipt,
    TransactionStatus,
)


class DemoMintService:
    def __init__(self):
        self.item = NFTCatalogItem(
            id="nft-1", category_id="science", name="Atom", ipfs_cid="bafy-atom"
        )

    async def get_eligibility(self, eligibility_id):
        return Eligibility(id=eligibility_id, player_id="player-1", category_id="science")

    async def count_available_nfts(self, category_id):
        return 1

    async def reserve_nft(self, category_id, eligibility_id):
        return self.item

    async def create_mint_operation(self, eligibility_id, catalog_id, player_id, stake_key, policy_id):
        return MintOperation(
            id="op-1",
            eligibility_id=eligibility_id,
            catalog_id=catalog_id,
            player_id=player_id,
            stake_key=stake_key,
            policy_id=policy_id,
        )

    async def update_mint_status(self, mint_operation_id, status, tx_hash=None, error=None):
        print(f"Mint operation {mint_operation_id}: {status.value} {tx_hash or ''}")

    async def mark_eligibility_used(self, eligibility_id):
        print(f"Eligibility {eligibility_id} used")

    async def create_player_nft(self, nft):
        print(f"Player {nft.stake_key} now owns {nft.asset_fingerprint}")


class DemoChain:
    async def find_transaction(self, reference):
        return None

    async def mint_nft(self, request):
        return TransactionReceipt(
            tx_hash="demo-tx",
            reference=request.reference,
            policy_id=request.policy_id,
            asset_fingerprint="asset1demo",
            token_name=request.asset_name,
        )

    async def get_transaction_status(self, tx_hash):
        return TransactionStatus.CONFIRMED


async def main():
    """Trigger a mint and let a short-lived worker finish it."""
    config = ForgeflowConfig(
        security=SecurityConfig(signing_key="demo-signing-key", internal_key="demo-internal-key"),
        nft_policy_id="demo-policy",
    )
    config.engine.poll_interval = 0.5
    services = WorkflowServices(
        mint_service=DemoMintService(),
        chain=DemoChain(),
        nft_policy_id=config.nft_policy_id,
        confirmation_wait=1,
    )
    runtime = create_runtime(config=config, services=services)

    payload = {
        "eligibility_id": "elig-1",
        "player_id": "player-1",
        "stake_key": "stake_test1",
        "payment_address": "addr_test1",
    }
    signature = runtime.tokens.sign_trigger(
        CanonicalMessage(definition_name="mint", idempotency_key="elig-1", payload=payload)
    )
    result = await runtime.dispatcher.trigger(
        TriggerRequest(definition_name="mint", idempotency_key="elig-1", payload=payload),
        signature,
    )
    print(f"Run {result.run_id} created={result.created}")

    await runtime.worker.start(lifespan=5)

    status = await runtime.dispatcher.status(result.run_id)
    print(f"Final status: {status.status.value} result={status.result}")


if __name__ == "__main__":
    asyncio.run(main())
