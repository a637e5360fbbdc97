"""Authentication of inbound triggers and internal resumes."""

from .context import CanonicalMessage
from .tokens import RESUME_AUDIENCE, TRIGGER_AUDIENCE, TokenService

__all__ = ["CanonicalMessage", "TokenService", "TRIGGER_AUDIENCE", "RESUME_AUDIENCE"]
