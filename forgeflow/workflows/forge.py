"""Forge workflow: burn ten category NFTs and mint one higher-tier NFT."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, model_validator

from ..contracts import RunStep, SleepStep, StepContext, WorkflowDefinition
from ..errors import ErrorCode, StepError, TerminalStepError
from .services import (
    BurnAsset,
    ForgeOperation,
    ForgeStatus,
    ForgeType,
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

FORGE_WORKFLOW_NAME = "forge"
REQUIRED_FORGE_INPUTS = 10


class ForgeRequest(BaseModel):
    forge_id: str
    forge_type: ForgeType
    stake_key: str
    input_fingerprints: List[str]
    category_id: Optional[str] = None
    season_id: Optional[str] = None
    recipient_address: str

    @model_validator(mode="after")
    def _check_target(self) -> "ForgeRequest":
        if self.forge_type == ForgeType.CATEGORY and not self.category_id:
            raise ValueError("category forge requires category_id")
        if self.forge_type == ForgeType.SEASON and not self.season_id:
            raise ValueError("season forge requires season_id")
        return self


def output_tier(request: ForgeRequest) -> Tuple[str, str, str]:
    """Tier, asset name and type code of the forged NFT.

    Names derive from the forge id so a replayed step asks the chain for
    the same asset.
    """
    if request.forge_type == ForgeType.CATEGORY:
        return (
            "ultimate",
            f"Ultimate_{request.category_id}_{request.forge_id}",
            f"ultimate_{request.category_id}",
        )
    if request.forge_type == ForgeType.MASTER:
        return "master", f"Master_{request.forge_id}", "master"
    return (
        "seasonal",
        f"Seasonal_{request.season_id}_{request.forge_id}",
        f"seasonal_{request.season_id}",
    )


def build_metadata(request: ForgeRequest, name: str, tier: str) -> NFTMetadata:
    count = len(request.input_fingerprints)
    return NFTMetadata(
        name=name,
        image=f"ipfs://placeholder_{tier}",
        description=f"{tier.capitalize()} NFT forged from {count} category NFTs",
        attributes=[
            {"trait_type": "Tier", "value": tier},
            {"trait_type": "Forge Type", "value": request.forge_type.value},
            {"trait_type": "Input Count", "value": str(count)},
        ],
    )


def _requirement_error(message: str) -> TerminalStepError:
    return TerminalStepError(message, code=ErrorCode.INVALID_FORGE_REQUIREMENTS)


async def validate_nft_ownership(ctx: StepContext) -> Dict[str, Any]:
    request = ctx.parse_input(ForgeRequest)
    fingerprints = request.input_fingerprints
    if len(fingerprints) != REQUIRED_FORGE_INPUTS or len(set(fingerprints)) != len(fingerprints):
        raise _requirement_error(
            f"Forge requires exactly {REQUIRED_FORGE_INPUTS} distinct NFTs, "
            f"got {len(set(fingerprints))} distinct of {len(fingerprints)}"
        )

    forge_service = services_of(ctx).require("forge_service")
    if not await forge_service.validate_nft_ownership(request.stake_key, fingerprints):
        raise TerminalStepError(
            f"Player {request.stake_key} does not own all required NFTs",
            code=ErrorCode.INVALID_OWNERSHIP,
        )
    return {"owner": request.stake_key, "count": len(fingerprints)}


async def validate_forge_requirements(ctx: StepContext) -> List[PlayerNFT]:
    request = ctx.parse_input(ForgeRequest)
    forge_service = services_of(ctx).require("forge_service")

    nfts = await forge_service.get_nfts_by_fingerprints(request.input_fingerprints)
    if len(nfts) != len(request.input_fingerprints):
        raise _requirement_error(
            f"Expected {len(request.input_fingerprints)} NFTs but found {len(nfts)}"
        )

    invalid = [nft for nft in nfts if nft.tier != "category"]
    if invalid:
        raise _requirement_error(
            f"Cannot forge with non-category NFTs. Found {len(invalid)} NFTs with invalid tiers"
        )

    categories = {nft.category_id for nft in nfts}
    if request.forge_type == ForgeType.CATEGORY:
        if len(categories) != 1:
            raise _requirement_error(
                f"Category forge requires all NFTs from same category. "
                f"Found {len(categories)} different categories"
            )
        found = next(iter(categories))
        if found != request.category_id:
            raise _requirement_error(
                f"Category mismatch: expected {request.category_id} but NFTs are from {found}"
            )
    elif request.forge_type == ForgeType.MASTER:
        if len(categories) != len(nfts):
            raise _requirement_error(
                f"Master forge requires NFTs from different categories. "
                f"Found {len(categories)} unique categories for {len(nfts)} NFTs"
            )
    else:
        seasons = {nft.season_id for nft in nfts}
        if len(seasons) != 1:
            raise _requirement_error(
                f"Season forge requires all NFTs from same season. "
                f"Found {len(seasons)} different seasons"
            )
        found = next(iter(seasons))
        if found != request.season_id:
            raise _requirement_error(
                f"Season mismatch: expected {request.season_id} but NFTs are from {found}"
            )
    return nfts


async def create_forge_operation(ctx: StepContext) -> ForgeOperation:
    request = ctx.parse_input(ForgeRequest)
    return await services_of(ctx).require("forge_service").create_forge_operation(
        request.forge_id,
        request.forge_type,
        request.stake_key,
        request.input_fingerprints,
        request.category_id,
        request.season_id,
    )


async def submit_burn_transaction(ctx: StepContext) -> TransactionReceipt:
    request = ctx.parse_input(ForgeRequest)
    services = services_of(ctx)
    # The forged output cannot be minted without a policy id.
    services.policy_id()
    chain = services.require("chain")
    operation = ForgeOperation.model_validate(ctx.output("create-forge-operation"))
    nfts = [PlayerNFT.model_validate(n) for n in ctx.output("validate-forge-requirements")]
    reference = f"forge-burn:{request.forge_id}"
    assets = [
        BurnAsset(
            policy_id=nft.policy_id,
            asset_name_hex=nft.token_name.encode("utf-8").hex(),
        )
        for nft in nfts
    ]

    async def submit() -> TransactionReceipt:
        return await chain.burn_nfts(assets, reference)

    receipt = await submit_once(chain, reference, submit)
    await services.require("forge_service").update_forge_status(
        operation.id, ForgeStatus.PENDING, burn_tx_hash=receipt.tx_hash
    )
    logger.info(f"Burn transaction {receipt.tx_hash} submitted for {reference}")
    return receipt


async def check_burn_confirmation(ctx: StepContext) -> Dict[str, Any]:
    receipt = TransactionReceipt.model_validate(ctx.output("submit-burn-transaction"))
    return await check_confirmed(services_of(ctx).require("chain"), receipt.tx_hash)


async def submit_mint_transaction(ctx: StepContext) -> TransactionReceipt:
    request = ctx.parse_input(ForgeRequest)
    services = services_of(ctx)
    chain = services.require("chain")
    operation = ForgeOperation.model_validate(ctx.output("create-forge-operation"))
    burn = TransactionReceipt.model_validate(ctx.output("submit-burn-transaction"))
    tier, asset_name, _ = output_tier(request)
    reference = f"forge-mint:{request.forge_id}"

    async def submit() -> TransactionReceipt:
        return await chain.mint_nft(
            NFTMintRequest(
                recipient_address=request.recipient_address,
                policy_id=services.policy_id(),
                asset_name=asset_name,
                metadata=build_metadata(request, asset_name, tier),
                reference=reference,
            )
        )

    receipt = await submit_once(chain, reference, submit)
    await services.require("forge_service").update_forge_status(
        operation.id,
        ForgeStatus.PENDING,
        burn_tx_hash=burn.tx_hash,
        mint_tx_hash=receipt.tx_hash,
        output_asset_fingerprint=receipt.asset_fingerprint,
    )
    logger.info(f"Forge mint transaction {receipt.tx_hash} submitted for {reference}")
    return receipt


async def check_mint_confirmation(ctx: StepContext) -> Dict[str, Any]:
    receipt = TransactionReceipt.model_validate(ctx.output("submit-mint-transaction"))
    return await check_confirmed(services_of(ctx).require("chain"), receipt.tx_hash)


async def update_forge_status(ctx: StepContext) -> None:
    operation = ForgeOperation.model_validate(ctx.output("create-forge-operation"))
    burn = TransactionReceipt.model_validate(ctx.output("submit-burn-transaction"))
    mint = TransactionReceipt.model_validate(ctx.output("submit-mint-transaction"))
    await services_of(ctx).require("forge_service").update_forge_status(
        operation.id,
        ForgeStatus.CONFIRMED,
        burn_tx_hash=burn.tx_hash,
        mint_tx_hash=mint.tx_hash,
        output_asset_fingerprint=mint.asset_fingerprint,
    )


async def update_player_nfts(ctx: StepContext) -> PlayerNFT:
    request = ctx.parse_input(ForgeRequest)
    services = services_of(ctx)
    forge_service = services.require("forge_service")
    operation = ForgeOperation.model_validate(ctx.output("create-forge-operation"))
    mint = TransactionReceipt.model_validate(ctx.output("submit-mint-transaction"))
    if not mint.asset_fingerprint or not mint.token_name:
        raise StepError(
            f"Transaction {mint.tx_hash} has no asset details yet",
            code=ErrorCode.BLOCKCHAIN_TIMEOUT,
        )
    tier, _, type_code = output_tier(request)

    await forge_service.mark_nfts_burned(request.input_fingerprints)
    record = PlayerNFT(
        stake_key=request.stake_key,
        policy_id=mint.policy_id or services.policy_id(),
        asset_fingerprint=mint.asset_fingerprint,
        token_name=mint.token_name,
        tier=tier,
        category_id=request.category_id if request.forge_type == ForgeType.CATEGORY else None,
        season_id=request.season_id if request.forge_type == ForgeType.SEASON else None,
        type_code=type_code,
        metadata=build_metadata(request, mint.token_name, tier).model_dump(),
        source_operation_id=operation.id,
    )
    await forge_service.create_player_nft(record)
    return record


async def summarize(ctx: StepContext) -> Dict[str, Any]:
    operation = ForgeOperation.model_validate(ctx.output("create-forge-operation"))
    burn = TransactionReceipt.model_validate(ctx.output("submit-burn-transaction"))
    mint = TransactionReceipt.model_validate(ctx.output("submit-mint-transaction"))
    return {
        "success": True,
        "forgeOperationId": operation.id,
        "burnTxHash": burn.tx_hash,
        "mintTxHash": mint.tx_hash,
        "outputAssetFingerprint": mint.asset_fingerprint,
    }


async def on_forge_failure(ctx: StepContext, error: StepError) -> None:
    if "create-forge-operation" not in ctx.outputs:
        return
    operation = ForgeOperation.model_validate(ctx.outputs["create-forge-operation"])
    burn = ctx.outputs.get("submit-burn-transaction") or {}
    mint = ctx.outputs.get("submit-mint-transaction") or {}
    await services_of(ctx).require("forge_service").update_forge_status(
        operation.id,
        ForgeStatus.FAILED,
        burn_tx_hash=burn.get("tx_hash"),
        mint_tx_hash=mint.get("tx_hash"),
        error=error.message,
    )
    if burn:
        logger.error(
            f"Forge {ctx.idempotency_key} failed after burn {burn.get('tx_hash')}; "
            f"reconcile manually ({error.code}: {error.message})"
        )


FORGE_WORKFLOW = WorkflowDefinition(
    name=FORGE_WORKFLOW_NAME,
    description="Burn ten category NFTs and mint the forged NFT",
    input_model=ForgeRequest,
    steps=[
        RunStep(name="validate-nft-ownership", fn=validate_nft_ownership),
        RunStep(name="validate-forge-requirements", fn=validate_forge_requirements),
        RunStep(name="create-forge-operation", fn=create_forge_operation),
        RunStep(name="submit-burn-transaction", fn=submit_burn_transaction),
        SleepStep(name="wait-for-burn-confirmation", seconds=120, compute=confirmation_wait),
        RunStep(name="check-burn-confirmation", fn=check_burn_confirmation, max_attempts=5),
        RunStep(name="submit-mint-transaction", fn=submit_mint_transaction),
        SleepStep(name="wait-for-mint-confirmation", seconds=120, compute=confirmation_wait),
        RunStep(name="check-mint-confirmation", fn=check_mint_confirmation, max_attempts=5),
        RunStep(name="update-forge-status", fn=update_forge_status),
        RunStep(name="update-player-nfts", fn=update_player_nfts),
    ],
    on_complete=summarize,
    on_failure=on_forge_failure,
)
