"""
Domain Services
"""
from relay.domain.services.dispatch_queue_service import DispatchQueueService
from relay.domain.services.event_service import EventService
from relay.domain.services.job_lock_service import JobLockService, singleton_job
from relay.domain.services.webhook_intake_service import (
    IntakeOutcome,
    IntakeResult,
    WebhookIntakeGuard,
)
from relay.domain.services.signature_verifier import HmacSignatureVerifier, SignatureVerifier

__all__ = [
    "DispatchQueueService",
    "EventService",
    "JobLockService",
    "singleton_job",
    "IntakeOutcome",
    "IntakeResult",
    "WebhookIntakeGuard",
    "HmacSignatureVerifier",
    "SignatureVerifier",
]
