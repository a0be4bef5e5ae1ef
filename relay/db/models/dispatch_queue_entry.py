"""
Dispatch Queue Entry Model - transactional outbox row for one event delivery.

Lifecycle: pending -> processing -> delivered | pending (retry) | failed.
Only the queue service mutates status and lease columns, always through a
conditional UPDATE scoped by the current status and holder.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey, Index, Enum as SQLEnum

from relay.core.clock import utcnow
from relay.db.database import Base


class DispatchStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


class DispatchQueueEntry(Base):
    __tablename__ = "domain_event_dispatch_queue"

    id = Column(Integer, primary_key=True)
    event_id = Column(
        Integer,
        ForeignKey("domain_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status = Column(
        SQLEnum(DispatchStatus, name="dispatch_status"),
        nullable=False,
        default=DispatchStatus.PENDING,
    )
    priority = Column(Integer, nullable=False, default=0)  # higher first
    available_at = Column(DateTime, nullable=False, default=utcnow)
    attempt_count = Column(Integer, nullable=False, default=0)

    # lease
    locked_at = Column(DateTime, nullable=True)
    locked_by = Column(String(120), nullable=True)

    delivered_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_dispatch_queue_status_available", "status", "available_at"),
        Index("ix_dispatch_queue_locked_by", "locked_by"),
    )
