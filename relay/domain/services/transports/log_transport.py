"""
Log transport - records each delivery as a structured log line.

Default transport: useful in development and for consumers that tail the
application log.
"""
from __future__ import annotations

from relay.core.logging import get_logger
from relay.db.models.dispatch_queue_entry import DispatchQueueEntry
from relay.db.models.domain_event import DomainEvent
from relay.domain.services.transports.base_transport import BaseDeliveryTransport

logger = get_logger(__name__)


class LogTransport(BaseDeliveryTransport):

    @property
    def transport_name(self) -> str:
        return "log"

    async def deliver(self, event: DomainEvent, entry: DispatchQueueEntry) -> None:
        logger.info(
            f"Domain event {event.event_type} delivered",
            extra_data={
                **event.delivery_metadata(),
                "entry_id": entry.id,
                "attempt": (entry.attempt_count or 0) + 1,
                "payload": event.payload,
                "metadata": entry.metadata_ or {},
            }
        )
