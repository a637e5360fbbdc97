"""Canonical forms used when signing inbound triggers."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict

from pydantic import BaseModel, Field


class CanonicalMessage(BaseModel):
    """Canonical representation of a trigger used for signing.

    The digest covers the definition, the idempotency key and the payload,
    so a signature for one operation cannot be replayed for another.
    """

    definition_name: str
    idempotency_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    def canonical_json(self) -> str:
        return json.dumps(
            self.model_dump(mode="json"),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def digest(self) -> str:
        """Hex SHA-256 of :meth:`canonical_json`."""
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()
