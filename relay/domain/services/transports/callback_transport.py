"""
Callback transport - hands each event to an in-process async callable.

For applications that embed the worker pool and consume events directly,
and for tests.
"""
from __future__ import annotations

from typing import Awaitable, Callable

from relay.core.exceptions import TransportFailure
from relay.db.models.dispatch_queue_entry import DispatchQueueEntry
from relay.db.models.domain_event import DomainEvent
from relay.domain.services.transports.base_transport import BaseDeliveryTransport

DeliveryCallback = Callable[[DomainEvent, DispatchQueueEntry], Awaitable[None]]


class CallbackTransport(BaseDeliveryTransport):

    def __init__(self, callback: DeliveryCallback, name: str = "callback"):
        self._callback = callback
        self._name = name

    @property
    def transport_name(self) -> str:
        return self._name

    async def deliver(self, event: DomainEvent, entry: DispatchQueueEntry) -> None:
        try:
            await self._callback(event, entry)
        except TransportFailure:
            raise
        except Exception as e:
            raise TransportFailure(
                f"{type(e).__name__}: {e}",
                transport=self._name,
                details={"event_id": event.id, "entry_id": entry.id},
            ) from e
