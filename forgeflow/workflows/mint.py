"""Mint workflow: turn an eligibility into an on-chain NFT.

``reserve-nft`` is the commit point. Once a catalog item is reserved the
eligibility counts as consumed: later terminal failures mark the mint
operation failed and leave the reservation in place for manual
reconciliation rather than releasing it.
"""

from __future__ import annotations

import logging
from datetime import timezone
from typing import Any, Dict

from pydantic import BaseModel

from ..contracts import RunStep, SleepStep, StepContext, WorkflowDefinition
from ..errors import ErrorCode, StepError, TerminalStepError
from .services import (
    Eligibility,
    MintOperation,
    MintStatus,
    NFTCatalogItem,
    NFTMetadata,
    NFTMintRequest,
    PlayerNFT,
    TransactionReceipt,
    check_confirmed,
    confirmation_wait,
    services_of,
    submit_once,
)

logger = logging.getLogger(__name__)

MINT_WORKFLOW_NAME = "mint"


class MintRequest(BaseModel):
    eligibility_id: str
    player_id: str
    stake_key: str
    payment_address: str


def build_metadata(nft: NFTCatalogItem) -> NFTMetadata:
    return NFTMetadata(
        name=nft.name,
        image=f"ipfs://{nft.ipfs_cid}",
        description=nft.description or f"{nft.name} - TriviaNFT Category NFT",
        attributes=[
            {"trait_type": key, "value": str(value)}
            for key, value in nft.attributes.items()
        ],
    )


def mint_reference(eligibility_id: str) -> str:
    return f"mint:{eligibility_id}"


async def validate_eligibility(ctx: StepContext) -> Eligibility:
    request = ctx.parse_input(MintRequest)
    mint_service = services_of(ctx).require("mint_service")

    eligibility = await mint_service.get_eligibility(request.eligibility_id)
    if eligibility is None:
        raise TerminalStepError(
            f"Eligibility {request.eligibility_id} not found",
            code=ErrorCode.INVALID_ELIGIBILITY,
        )
    if eligibility.player_id != request.player_id:
        raise TerminalStepError(
            f"Eligibility {request.eligibility_id} does not belong to player {request.player_id}",
            code=ErrorCode.INVALID_ELIGIBILITY,
        )
    if eligibility.status != "active":
        raise TerminalStepError(
            f"Eligibility {request.eligibility_id} cannot mint (status {eligibility.status})",
            code=ErrorCode.INVALID_ELIGIBILITY,
        )
    expires_at = eligibility.expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at is not None and expires_at <= ctx.now:
        raise TerminalStepError(
            f"Eligibility {request.eligibility_id} expired",
            code=ErrorCode.INVALID_ELIGIBILITY,
        )
    return eligibility


async def check_stock_availability(ctx: StepContext) -> Dict[str, Any]:
    eligibility = Eligibility.model_validate(ctx.output("validate-eligibility"))
    mint_service = services_of(ctx).require("mint_service")

    available = await mint_service.count_available_nfts(eligibility.category_id)
    if available <= 0:
        raise TerminalStepError(
            f"No NFTs available for category {eligibility.category_id}",
            code=ErrorCode.INSUFFICIENT_STOCK,
        )
    return {"categoryId": eligibility.category_id, "available": available}


async def reserve_nft(ctx: StepContext) -> NFTCatalogItem:
    request = ctx.parse_input(MintRequest)
    eligibility = Eligibility.model_validate(ctx.output("validate-eligibility"))
    mint_service = services_of(ctx).require("mint_service")

    nft = await mint_service.reserve_nft(eligibility.category_id, request.eligibility_id)
    if nft is None:
        raise TerminalStepError(
            f"Failed to reserve NFT for category {eligibility.category_id}",
            code=ErrorCode.INSUFFICIENT_STOCK,
        )
    logger.info(f"Reserved NFT {nft.id} for eligibility {request.eligibility_id}")
    return nft


async def create_mint_operation(ctx: StepContext) -> MintOperation:
    request = ctx.parse_input(MintRequest)
    services = services_of(ctx)
    nft = NFTCatalogItem.model_validate(ctx.output("reserve-nft"))

    return await services.require("mint_service").create_mint_operation(
        request.eligibility_id,
        nft.id,
        request.player_id,
        request.stake_key,
        services.policy_id(),
    )


async def submit_blockchain_transaction(ctx: StepContext) -> TransactionReceipt:
    request = ctx.parse_input(MintRequest)
    services = services_of(ctx)
    chain = services.require("chain")
    nft = NFTCatalogItem.model_validate(ctx.output("reserve-nft"))
    operation = MintOperation.model_validate(ctx.output("create-mint-operation"))
    reference = mint_reference(request.eligibility_id)

    async def submit() -> TransactionReceipt:
        return await chain.mint_nft(
            NFTMintRequest(
                recipient_address=request.payment_address,
                policy_id=services.policy_id(),
                asset_name=nft.name,
                metadata=build_metadata(nft),
                reference=reference,
            )
        )

    receipt = await submit_once(chain, reference, submit)
    await services.require("mint_service").update_mint_status(
        operation.id, MintStatus.PENDING, receipt.tx_hash
    )
    logger.info(f"Mint transaction {receipt.tx_hash} submitted for {reference}")
    return receipt


async def check_confirmation(ctx: StepContext) -> Dict[str, Any]:
    receipt = TransactionReceipt.model_validate(
        ctx.output("submit-blockchain-transaction")
    )
    return await check_confirmed(services_of(ctx).require("chain"), receipt.tx_hash)


async def update_mint_status(ctx: StepContext) -> None:
    operation = MintOperation.model_validate(ctx.output("create-mint-operation"))
    receipt = TransactionReceipt.model_validate(
        ctx.output("submit-blockchain-transaction")
    )
    await services_of(ctx).require("mint_service").update_mint_status(
        operation.id, MintStatus.CONFIRMED, receipt.tx_hash
    )


async def mark_eligibility_used(ctx: StepContext) -> None:
    request = ctx.parse_input(MintRequest)
    await services_of(ctx).require("mint_service").mark_eligibility_used(
        request.eligibility_id
    )


async def create_player_nft(ctx: StepContext) -> PlayerNFT:
    request = ctx.parse_input(MintRequest)
    services = services_of(ctx)
    eligibility = Eligibility.model_validate(ctx.output("validate-eligibility"))
    nft = NFTCatalogItem.model_validate(ctx.output("reserve-nft"))
    operation = MintOperation.model_validate(ctx.output("create-mint-operation"))
    receipt = TransactionReceipt.model_validate(
        ctx.output("submit-blockchain-transaction")
    )
    if not receipt.asset_fingerprint or not receipt.token_name:
        raise StepError(
            f"Transaction {receipt.tx_hash} has no asset details yet",
            code=ErrorCode.BLOCKCHAIN_TIMEOUT,
        )

    record = PlayerNFT(
        stake_key=request.stake_key,
        policy_id=receipt.policy_id or services.policy_id(),
        asset_fingerprint=receipt.asset_fingerprint,
        token_name=receipt.token_name,
        tier="category",
        category_id=eligibility.category_id,
        type_code="category",
        metadata=build_metadata(nft).model_dump(),
        source_operation_id=operation.id,
    )
    await services.require("mint_service").create_player_nft(record)
    return record


async def summarize(ctx: StepContext) -> Dict[str, Any]:
    operation = MintOperation.model_validate(ctx.output("create-mint-operation"))
    receipt = TransactionReceipt.model_validate(
        ctx.output("submit-blockchain-transaction")
    )
    return {
        "success": True,
        "mintOperationId": operation.id,
        "txHash": receipt.tx_hash,
        "assetFingerprint": receipt.asset_fingerprint,
    }


async def on_mint_failure(ctx: StepContext, error: StepError) -> None:
    if "create-mint-operation" in ctx.outputs:
        operation = MintOperation.model_validate(ctx.outputs["create-mint-operation"])
        receipt = ctx.outputs.get("submit-blockchain-transaction") or {}
        await services_of(ctx).require("mint_service").update_mint_status(
            operation.id, MintStatus.FAILED, receipt.get("tx_hash"), error.message
        )
    if "reserve-nft" in ctx.outputs:
        logger.error(
            f"Mint for eligibility {ctx.idempotency_key} failed after reserving NFT "
            f"{ctx.outputs['reserve-nft'].get('id')}; reconcile manually "
            f"({error.code}: {error.message})"
        )


MINT_WORKFLOW = WorkflowDefinition(
    name=MINT_WORKFLOW_NAME,
    description="Mint a category NFT for a player eligibility",
    input_model=MintRequest,
    steps=[
        RunStep(name="validate-eligibility", fn=validate_eligibility),
        RunStep(name="check-stock-availability", fn=check_stock_availability),
        RunStep(name="reserve-nft", fn=reserve_nft),
        RunStep(name="create-mint-operation", fn=create_mint_operation),
        RunStep(name="submit-blockchain-transaction", fn=submit_blockchain_transaction),
        SleepStep(name="wait-for-confirmation", seconds=120, compute=confirmation_wait),
        RunStep(name="check-confirmation", fn=check_confirmation, max_attempts=5),
        RunStep(name="update-mint-status", fn=update_mint_status),
        RunStep(name="mark-eligibility-used", fn=mark_eligibility_used),
        RunStep(name="create-player-nft", fn=create_player_nft),
    ],
    on_complete=summarize,
    on_failure=on_mint_failure,
)
