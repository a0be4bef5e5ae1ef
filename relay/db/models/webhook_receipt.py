"""
Webhook Receipt Model - idempotency table for inbound provider callbacks.

The unique (provider, external_event_id) pair is the only dedup key.
payload_hash is kept for diagnostics (detecting a provider that replays the
same event id with a different body), never for deduplication.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index, UniqueConstraint

from relay.core.clock import utcnow
from relay.db.database import Base


class ReceiptStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookReceipt(Base):
    __tablename__ = "integration_webhook_receipts"

    id = Column(Integer, primary_key=True)
    provider = Column(String(50), nullable=False)
    external_event_id = Column(String(255), nullable=False)
    signature = Column(String(512), nullable=True)
    payload_hash = Column(String(64), nullable=False)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    status = Column(String(20), nullable=False, default=ReceiptStatus.RECEIVED.value)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="uq_webhook_receipts_provider_event"),
        Index("ix_webhook_receipts_status_received", "status", "received_at"),
    )
