"""Interface every work queue implements."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import WorkItem

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """At-least-once queue of :class:`WorkItem` messages.

    ``RawMessageT`` is whatever the backend needs to settle a delivery.
    """

    async def connect(self) -> None:
        """Open broker resources; backends without any keep the default."""

    async def disconnect(self) -> None:
        """Release broker resources."""

    @abc.abstractmethod
    async def publish(self, topic: str, item: WorkItem) -> None:
        """Enqueue ``item`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, WorkItem]]:
        """Yield ``(raw, item)`` deliveries from ``topic``.

        Stops after ``lifespan`` seconds; runs forever when it is ``None``.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Settle a delivery that was handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Settle a delivery that failed; backends without requeue just ack."""
        await self.ack(raw_message)
