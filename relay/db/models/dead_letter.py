"""
Dispatch Dead Letter Model - operator-facing record of terminally failed deliveries.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey

from relay.core.clock import utcnow
from relay.db.database import Base


class DispatchDeadLetter(Base):
    """Snapshot taken when a queue entry transitions to ``failed``"""

    __tablename__ = "domain_event_dead_letters"

    id = Column(Integer, primary_key=True)
    dispatch_id = Column(
        Integer,
        ForeignKey("domain_event_dispatch_queue.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_id = Column(Integer, nullable=False)
    event_type = Column(String(120), nullable=True)
    attempt_count = Column(Integer, nullable=False)
    failure_reason = Column(String(50), nullable=False)  # non_retryable | max_attempts | lease_expired
    failure_message = Column(Text, nullable=True)
    event_payload = Column(JSON, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
