"""Mint and forge workflow definitions.

Importing this package registers both definitions in the global registry.
"""

from ..registry import REGISTRY, WorkflowRegistry, register_workflow
from .forge import FORGE_WORKFLOW, ForgeRequest
from .mint import MINT_WORKFLOW, MintRequest
from .services import WorkflowServices


def register_defaults(registry: WorkflowRegistry = REGISTRY) -> WorkflowRegistry:
    """Register the mint and forge definitions in ``registry``."""
    register_workflow(MINT_WORKFLOW, registry)
    register_workflow(FORGE_WORKFLOW, registry)
    return registry


register_defaults()

__all__ = [
    "FORGE_WORKFLOW",
    "MINT_WORKFLOW",
    "ForgeRequest",
    "MintRequest",
    "WorkflowServices",
    "register_defaults",
]
