"""
Domain Event Model - append-only log of things that happened in the platform.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from relay.core.clock import utcnow
from relay.db.database import Base


class DomainEvent(Base):
    """Immutable event written by producers in the same transaction as its dispatch row"""

    __tablename__ = "domain_events"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(120), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)

    # attribution forwarded to transports as delivery metadata
    entity_type = Column(String(80), nullable=True)
    entity_id = Column(String(120), nullable=True)
    performed_by = Column(String(120), nullable=True)

    __table_args__ = (
        Index("ix_domain_events_type_occurred", "event_type", "occurred_at"),
        Index("ix_domain_events_entity", "entity_type", "entity_id"),
    )

    def delivery_metadata(self) -> dict:
        return {
            "event_id": self.id,
            "event_type": self.event_type,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "performed_by": self.performed_by,
        }
