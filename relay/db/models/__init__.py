"""
Database Models
"""
from relay.db.models.domain_event import DomainEvent
from relay.db.models.dispatch_queue_entry import DispatchQueueEntry, DispatchStatus
from relay.db.models.dead_letter import DispatchDeadLetter
from relay.db.models.webhook_receipt import WebhookReceipt, ReceiptStatus
from relay.db.models.job_state import JobState

__all__ = [
    "DomainEvent",
    "DispatchQueueEntry",
    "DispatchStatus",
    "DispatchDeadLetter",
    "WebhookReceipt",
    "ReceiptStatus",
    "JobState",
]
