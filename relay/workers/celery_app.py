"""
Celery Application Configuration
"""
from celery import Celery

from relay.core.config import settings

celery_app = Celery(
    "relay",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["relay.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    "run-dispatch-cycle": {
        "task": "relay.workers.tasks.run_dispatch_cycle",
        "schedule": settings.DISPATCH_POLL_INTERVAL_SECONDS,
    },
    "reap-expired-leases-every-minute": {
        "task": "relay.workers.tasks.reap_expired_leases",
        "schedule": 60.0,
    },
    "scan-stuck-webhook-receipts-every-5-minutes": {
        "task": "relay.workers.tasks.scan_stuck_webhook_receipts",
        "schedule": 300.0,
    },
}
