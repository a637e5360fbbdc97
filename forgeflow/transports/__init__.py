"""Work queues carrying trigger and resume items to workers."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ForgeflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[ForgeflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``FORGEFLOW_TRANSPORT`` or config."""

    config = config or load_config()
    name = (backend or os.getenv("FORGEFLOW_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        settings = config.transport.redis
        return RedisTransport(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
        )
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
