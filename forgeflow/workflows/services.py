"""Host-application collaborators used by the mint and forge workflows.

The engine never talks to a database or a blockchain node directly. Step
functions reach the host through the protocols below, injected into every
step context as :class:`WorkflowServices`.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import StepContext
from ..errors import ErrorCode, StepError, TerminalStepError


class MintStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ForgeStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ForgeType(str, Enum):
    CATEGORY = "category"
    MASTER = "master"
    SEASON = "season"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Eligibility(BaseModel):
    """A player's right to mint one NFT of a category."""

    id: str
    player_id: str
    category_id: str
    status: str = "active"
    expires_at: Optional[datetime] = None


class NFTCatalogItem(BaseModel):
    """Catalog entry reserved for a mint."""

    id: str
    category_id: str
    name: str
    ipfs_cid: str
    description: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class MintOperation(BaseModel):
    id: str
    eligibility_id: str
    catalog_id: str
    player_id: str
    stake_key: str
    policy_id: str
    status: MintStatus = MintStatus.PENDING
    tx_hash: Optional[str] = None


class ForgeOperation(BaseModel):
    id: str
    forge_id: str
    type: ForgeType
    stake_key: str
    input_fingerprints: List[str]
    category_id: Optional[str] = None
    season_id: Optional[str] = None
    status: ForgeStatus = ForgeStatus.PENDING
    burn_tx_hash: Optional[str] = None
    mint_tx_hash: Optional[str] = None
    output_asset_fingerprint: Optional[str] = None


class PlayerNFT(BaseModel):
    """Ownership record of an NFT held by a player."""

    stake_key: str
    policy_id: str
    asset_fingerprint: str
    token_name: str
    tier: str = "category"
    category_id: Optional[str] = None
    season_id: Optional[str] = None
    type_code: str = "category"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    source_operation_id: Optional[str] = None


class NFTMetadata(BaseModel):
    """On-chain metadata attached to a minted asset."""

    name: str
    image: str
    description: str
    attributes: List[Dict[str, str]] = Field(default_factory=list)


class NFTMintRequest(BaseModel):
    recipient_address: str
    policy_id: str
    asset_name: str
    metadata: NFTMetadata
    reference: str


class BurnAsset(BaseModel):
    policy_id: str
    asset_name_hex: str


class TransactionReceipt(BaseModel):
    """Submitted transaction as reported by the chain client."""

    tx_hash: str
    reference: Optional[str] = None
    policy_id: Optional[str] = None
    asset_fingerprint: Optional[str] = None
    token_name: Optional[str] = None


class BlockchainError(StepError):
    """Raised by :class:`BlockchainClient` implementations.

    Node outages are retryable. Rejections (insufficient funds, invalid
    address) are raised with ``retryable=False`` and ``BLOCKCHAIN_REJECTED``.
    """

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | str = ErrorCode.NODE_UNAVAILABLE,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, code=code, retryable=retryable)


class MintService(Protocol):
    async def get_eligibility(self, eligibility_id: str) -> Optional[Eligibility]: ...

    async def count_available_nfts(self, category_id: str) -> int: ...

    async def reserve_nft(
        self, category_id: str, eligibility_id: str
    ) -> Optional[NFTCatalogItem]:
        """Reserve a catalog item for the eligibility.

        Must return the same item when called again for an eligibility that
        already holds a reservation.
        """

    async def create_mint_operation(
        self,
        eligibility_id: str,
        catalog_id: str,
        player_id: str,
        stake_key: str,
        policy_id: str,
    ) -> MintOperation:
        """Create (or return the existing) mint operation for the eligibility."""

    async def update_mint_status(
        self,
        mint_operation_id: str,
        status: MintStatus,
        tx_hash: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None: ...

    async def mark_eligibility_used(self, eligibility_id: str) -> None: ...

    async def create_player_nft(self, nft: PlayerNFT) -> None:
        """Insert the ownership record; a repeat for the same fingerprint is a no-op."""


class ForgeService(Protocol):
    async def validate_nft_ownership(
        self, stake_key: str, fingerprints: List[str]
    ) -> bool: ...

    async def get_nfts_by_fingerprints(self, fingerprints: List[str]) -> List[PlayerNFT]: ...

    async def create_forge_operation(
        self,
        forge_id: str,
        forge_type: ForgeType,
        stake_key: str,
        fingerprints: List[str],
        category_id: Optional[str] = None,
        season_id: Optional[str] = None,
    ) -> ForgeOperation:
        """Create (or return the existing) forge operation for ``forge_id``."""

    async def update_forge_status(
        self,
        forge_operation_id: str,
        status: ForgeStatus,
        burn_tx_hash: Optional[str] = None,
        mint_tx_hash: Optional[str] = None,
        output_asset_fingerprint: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None: ...

    async def mark_nfts_burned(self, fingerprints: List[str]) -> None: ...

    async def create_player_nft(self, nft: PlayerNFT) -> None: ...


class BlockchainClient(Protocol):
    async def find_transaction(self, reference: str) -> Optional[TransactionReceipt]:
        """Transaction previously submitted under ``reference``, if any."""

    async def mint_nft(self, request: NFTMintRequest) -> TransactionReceipt: ...

    async def burn_nfts(
        self, assets: List[BurnAsset], reference: str
    ) -> TransactionReceipt: ...

    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus: ...


class WorkflowServices(BaseModel):
    """Dependencies injected into every mint and forge step."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    mint_service: Optional[Any] = None
    forge_service: Optional[Any] = None
    chain: Optional[Any] = None
    nft_policy_id: Optional[str] = None
    confirmation_wait: float = 120.0

    def require(self, name: str) -> Any:
        service = getattr(self, name)
        if service is None:
            raise TerminalStepError(
                f"Workflow service '{name}' is not configured",
                code=ErrorCode.CONFIGURATION_ERROR,
            )
        return service

    def policy_id(self) -> str:
        if not self.nft_policy_id:
            raise TerminalStepError(
                "NFT policy id is not configured (NFT_POLICY_ID)",
                code=ErrorCode.CONFIGURATION_ERROR,
            )
        return self.nft_policy_id


def services_of(ctx: StepContext) -> WorkflowServices:
    """The :class:`WorkflowServices` carried by ``ctx``."""
    if not isinstance(ctx.deps, WorkflowServices):
        raise TerminalStepError(
            "Step context carries no workflow services",
            code=ErrorCode.CONFIGURATION_ERROR,
        )
    return ctx.deps


def confirmation_wait(ctx: StepContext) -> float:
    """Sleep duration before checking a submitted transaction."""
    if isinstance(ctx.deps, WorkflowServices):
        return ctx.deps.confirmation_wait
    return 120.0


async def submit_once(
    chain: BlockchainClient, reference: str, submit: Any
) -> TransactionReceipt:
    """Return the transaction recorded under ``reference`` or call ``submit``.

    ``submit`` is a zero-argument coroutine function. Looking the reference
    up first keeps a retried or replayed step from submitting twice.
    """
    existing = await chain.find_transaction(reference)
    if existing is not None:
        return existing
    return await submit()


async def check_confirmed(chain: BlockchainClient, tx_hash: str) -> Dict[str, Any]:
    """Raise a retryable error while ``tx_hash`` is pending."""
    status = await chain.get_transaction_status(tx_hash)
    if status == TransactionStatus.CONFIRMED:
        return {"txHash": tx_hash, "confirmed": True}
    if status == TransactionStatus.FAILED:
        raise TerminalStepError(
            f"Transaction {tx_hash} was rejected by the chain",
            code=ErrorCode.BLOCKCHAIN_REJECTED,
        )
    raise StepError(
        f"Transaction {tx_hash} is not confirmed yet",
        code=ErrorCode.BLOCKCHAIN_TIMEOUT,
        retryable=True,
    )
