"""
Event Service - producer side of the outbox.

Writes a DomainEvent and its dispatch row in the caller's transaction, so an
event is either stored and queued together or not at all. Callers commit.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import as_naive_utc
from relay.core.exceptions import ValidationException
from relay.core.logging import get_logger
from relay.db.models.dispatch_queue_entry import DispatchQueueEntry
from relay.db.models.domain_event import DomainEvent
from relay.domain.services.dispatch_queue_service import DispatchQueueService

logger = get_logger(__name__)


class EventService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.queue = DispatchQueueService(db)

    async def record_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        available_at: datetime | None = None,
        occurred_at: datetime | None = None,
        entity_type: str | None = None,
        entity_id: str | int | None = None,
        performed_by: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[DomainEvent, DispatchQueueEntry]:
        """Persist an event and enqueue its delivery. Flushes, never commits."""
        if not event_type or not event_type.strip():
            raise ValidationException("event_type is required", field="event_type")
        if not isinstance(payload, dict):
            raise ValidationException("payload must be a JSON object", field="payload")

        event = DomainEvent(
            event_type=event_type.strip(),
            payload=payload,
            occurred_at=as_naive_utc(occurred_at),
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            performed_by=performed_by,
        )
        self.db.add(event)
        await self.db.flush()

        entry = await self.queue.enqueue(
            event.id,
            priority=priority,
            available_at=available_at,
            metadata=metadata,
        )

        logger.info(
            "Domain event recorded",
            extra_data={
                "event_id": event.id,
                "event_type": event.event_type,
                "entry_id": entry.id,
                "priority": priority,
            }
        )
        return event, entry
