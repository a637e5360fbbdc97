"""Exception types raised by forgeflow."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict


class ErrorCode(str, Enum):
    """Structured failure codes surfaced on failed runs."""

    INVALID_ELIGIBILITY = "INVALID_ELIGIBILITY"
    INVALID_OWNERSHIP = "INVALID_OWNERSHIP"
    INVALID_FORGE_REQUIREMENTS = "INVALID_FORGE_REQUIREMENTS"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    NODE_UNAVAILABLE = "NODE_UNAVAILABLE"
    BLOCKCHAIN_TIMEOUT = "BLOCKCHAIN_TIMEOUT"
    BLOCKCHAIN_REJECTED = "BLOCKCHAIN_REJECTED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    STEP_TIMEOUT = "STEP_TIMEOUT"
    INTERRUPTED = "INTERRUPTED"
    UNKNOWN_WORKFLOW = "UNKNOWN_WORKFLOW"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class ForgeflowError(Exception):
    """Base error for forgeflow."""


class AuthenticationError(ForgeflowError):
    """Inbound trigger or resume call failed verification."""


class UnknownWorkflowError(ForgeflowError):
    """No workflow definition is registered under the requested name."""


class InvalidPayloadError(ForgeflowError):
    """Trigger payload does not match the definition's input model."""


class RunNotFoundError(ForgeflowError):
    """No workflow run exists with the requested id."""


class ConfigurationError(ForgeflowError):
    """Required configuration is missing or malformed."""


class StepError(ForgeflowError):
    """Failure raised by a step function.

    ``retryable`` decides whether the retry policy may re-attempt the step.
    It is an explicit flag set by the step, never inferred from the message.
    ``code`` is kept as a plain string: host steps may use codes of their
    own next to the ones in :class:`ErrorCode`.
    """

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | str = ErrorCode.UNEXPECTED_ERROR,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code: str = code.value if isinstance(code, ErrorCode) else str(code)
        self.retryable = retryable

    def to_detail(self) -> Dict[str, Any]:
        """Return a JSON-friendly description of the error."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return (
            f"{type(self).__name__}({self.message!r}, code={self.code}, "
            f"retryable={self.retryable})"
        )


class TerminalStepError(StepError):
    """Step failure that must fail the run without further attempts."""

    def __init__(
        self, message: str, *, code: ErrorCode | str = ErrorCode.UNEXPECTED_ERROR
    ) -> None:
        super().__init__(message, code=code, retryable=False)
