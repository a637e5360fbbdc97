"""Signed trigger and resume tokens (HS256 JWTs)."""

from __future__ import annotations

import hmac
import time
from typing import Any, Callable, Mapping, Optional

import jwt

from ..errors import AuthenticationError
from .context import CanonicalMessage

TRIGGER_AUDIENCE = "forgeflow:trigger"
RESUME_AUDIENCE = "forgeflow:resume"
ALGORITHM = "HS256"


class TokenService:
    """Issues and verifies the two kinds of tokens forgeflow accepts.

    Trigger signatures are produced by the host with the shared signing key
    and bind a digest of the request. Resume tokens are minted internally by
    the scheduler with the internal key and bind the run id.
    """

    def __init__(
        self,
        signing_key: Optional[str],
        internal_key: Optional[str],
        issuer: str = "forgeflow",
        ttl: int = 300,
        leeway: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.signing_key = signing_key
        self.internal_key = internal_key
        self.issuer = issuer
        self.ttl = ttl
        self.leeway = leeway
        self._clock = clock

    @classmethod
    def from_config(cls, config: Any) -> "TokenService":
        security = config.security
        return cls(
            signing_key=security.signing_key,
            internal_key=security.internal_key,
            issuer=security.issuer,
            ttl=security.token_ttl,
        )

    def _claims(self, audience: str, **extra: Any) -> dict:
        now = int(self._clock())
        return {
            "iss": self.issuer,
            "aud": audience,
            "iat": now,
            "exp": now + self.ttl,
            **extra,
        }

    def _decode(self, token: str, key: Optional[str], audience: str) -> Mapping[str, Any]:
        if not key:
            raise AuthenticationError(f"No key configured for {audience}")
        if not token:
            raise AuthenticationError("Missing token")
        try:
            return jwt.decode(
                token,
                key,
                algorithms=[ALGORITHM],
                audience=audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": ["exp", "iat", "aud", "iss"]},
            )
        except jwt.PyJWTError as exc:
            raise AuthenticationError(f"Invalid token: {exc}") from exc

    # ------------------------------------------------------------------
    def sign_trigger(self, message: CanonicalMessage) -> str:
        """Signature the host attaches to a trigger request."""
        if not self.signing_key:
            raise AuthenticationError("No signing key configured")
        claims = self._claims(TRIGGER_AUDIENCE, digest=message.digest())
        return jwt.encode(claims, self.signing_key, algorithm=ALGORITHM)

    def verify_trigger(self, message: CanonicalMessage, signature: Optional[str]) -> None:
        claims = self._decode(signature or "", self.signing_key, TRIGGER_AUDIENCE)
        digest = claims.get("digest")
        if not isinstance(digest, str) or not hmac.compare_digest(
            digest, message.digest()
        ):
            raise AuthenticationError("Trigger signature does not match request")

    def issue_resume_token(self, run_id: str) -> str:
        if not self.internal_key:
            raise AuthenticationError("No internal key configured")
        claims = self._claims(RESUME_AUDIENCE, sub=run_id)
        return jwt.encode(claims, self.internal_key, algorithm=ALGORITHM)

    def verify_resume_token(self, run_id: str, token: Optional[str]) -> None:
        claims = self._decode(token or "", self.internal_key, RESUME_AUDIENCE)
        subject = claims.get("sub")
        if not isinstance(subject, str) or not hmac.compare_digest(subject, run_id):
            raise AuthenticationError("Resume token was issued for another run")
