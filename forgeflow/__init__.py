"""Forgeflow: durable step workflows for NFT mint and forge operations."""

__version__ = "0.1.0"

from .contracts import RunStep, SleepStep, StepContext, WorkflowDefinition
from .dispatch import EventDispatcher
from .errors import StepError, TerminalStepError
from .orchestrator import WorkflowOrchestrator
from .persistence import get_repository
from .registry import REGISTRY
from .transports import get_transport

__all__ = [
    "EventDispatcher",
    "REGISTRY",
    "RunStep",
    "SleepStep",
    "StepContext",
    "StepError",
    "TerminalStepError",
    "WorkflowDefinition",
    "WorkflowOrchestrator",
    "get_repository",
    "get_transport",
]
