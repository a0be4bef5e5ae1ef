"""
Delivery transport interface.

A transport pushes one domain event to its consumer. It either returns
normally (delivered) or raises. ``TransportFailure(non_retryable=True)`` means
retrying cannot help; any other exception is retried with backoff.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from relay.db.models.dispatch_queue_entry import DispatchQueueEntry
from relay.db.models.domain_event import DomainEvent


class BaseDeliveryTransport(ABC):

    @property
    @abstractmethod
    def transport_name(self) -> str:
        """Stable name, also used as the circuit breaker key."""

    @abstractmethod
    async def deliver(self, event: DomainEvent, entry: DispatchQueueEntry) -> None:
        """
        Deliver ``event`` for queue row ``entry``.

        Raises:
            TransportFailure: delivery failed (see ``non_retryable``).
        """
