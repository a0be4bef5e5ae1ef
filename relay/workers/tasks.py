"""
Celery tasks driving the coordinator.

- run_dispatch_cycle: one lease+deliver pass of the worker pool
- reap_expired_leases: returns crashed workers' rows to the queue (singleton)
- scan_stuck_webhook_receipts: alerts on receipts whose handler never finished (singleton)

Each task body is an ``async def`` taking a session factory, wrapped by a thin
sync Celery task that opens a loop-bound engine.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Awaitable, Callable

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.core.clock import utcnow
from relay.core.config import settings
from relay.core.exceptions import LockHeldError, LockLostError
from relay.core.logging import get_logger, log_async_operation, set_correlation_id
from relay.core.redis_client import acquire_throttle
from relay.db.database import get_task_session_factory
from relay.domain.services.dispatch_queue_service import DispatchQueueService
from relay.domain.services.job_lock_service import singleton_job
from relay.domain.services.webhook_intake_service import WebhookIntakeGuard
from relay.workers.celery_app import celery_app
from relay.workers.dispatch_pool import DispatchWorkerPool, resolve_worker_id

logger = get_logger(__name__)

REAPER_JOB_NAME = "dispatch-lease-reaper"
RECEIPT_SCAN_JOB_NAME = "webhook-stuck-receipt-scan"

SingletonBody = Callable[[AsyncSession, dict[str, Any]], Awaitable[dict[str, Any]]]


@contextmanager
def get_event_loop():
    """
    Fresh event loop per Celery task, torn down completely afterwards.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # the Redis singleton is bound to this loop; drop it before closing
            from relay.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except (RedisError, RuntimeError) as e:
            logger.warning(
                "Closing Redis at task end failed",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Run a coroutine to completion from a sync Celery task"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _run_singleton(
    session_factory: async_sessionmaker[AsyncSession],
    job_name: str,
    worker_id: str,
    body: SingletonBody,
) -> dict[str, Any]:
    """
    Run ``body`` while holding the ``job_name`` lease and store its summary as
    the job state. Returns {"skipped": True, ...} when another worker holds it
    or takes it over before the state is stored.
    """
    async with session_factory() as lock_db:
        try:
            async with singleton_job(lock_db, job_name, worker_id) as job:
                async with session_factory() as db:
                    summary = await body(db, dict(job.state or {}))
                await job.commit({
                    **summary,
                    "last_run_at": utcnow().isoformat(),
                    "last_worker": worker_id,
                })
                return summary
        except LockHeldError as e:
            logger.info(
                "Singleton job already running elsewhere, skipping",
                extra_data={"job_name": job_name, "worker_id": worker_id, "locked_by": e.holder},
            )
            return {"skipped": True, "reason": "locked", "locked_by": e.holder}
        except LockLostError:
            logger.warning(
                "Singleton job lease lost mid-run, state not stored",
                extra_data={"job_name": job_name, "worker_id": worker_id},
            )
            return {"skipped": True, "reason": "lock_lost"}


@log_async_operation("dispatch_cycle")
async def dispatch_cycle(
    session_factory: async_sessionmaker[AsyncSession],
    worker_id: str,
) -> dict[str, Any]:
    pool = DispatchWorkerPool(session_factory, worker_id=worker_id)
    result = await pool.run_once()
    return result.to_dict()


async def _reap_body(db: AsyncSession, state: dict[str, Any]) -> dict[str, Any]:
    reaped = await DispatchQueueService(db).reap_expired_leases(settings.DISPATCH_LEASE_TIMEOUT_SECONDS)
    return {
        "reaped": len(reaped),
        "total_reaped": int(state.get("total_reaped", 0)) + len(reaped),
    }


@log_async_operation("reap_expired_leases")
async def reap_leases(
    session_factory: async_sessionmaker[AsyncSession],
    worker_id: str,
) -> dict[str, Any]:
    return await _run_singleton(session_factory, REAPER_JOB_NAME, worker_id, _reap_body)


async def _scan_body(db: AsyncSession, state: dict[str, Any]) -> dict[str, Any]:
    guard = WebhookIntakeGuard(db)
    stuck = await guard.find_stuck_receipts()

    alerted = 0
    for receipt in stuck:
        throttle_key = f"alert_throttle:webhook_receipt:{receipt.id}"
        try:
            should_alert = await acquire_throttle(throttle_key, settings.WEBHOOK_ALERT_THROTTLE_SECONDS)
        except RedisError as e:
            logger.warning(
                "Alert throttle unavailable, alerting without dedupe",
                extra_data={"receipt_id": receipt.id, "error": str(e)},
            )
            should_alert = True
        if not should_alert:
            continue
        alerted += 1
        logger.error(
            "Webhook receipt stuck in received",
            extra_data={
                "receipt_id": receipt.id,
                "provider": receipt.provider,
                "external_event_id": receipt.external_event_id,
                "received_at": receipt.received_at.isoformat(),
            },
        )

    return {"stuck": len(stuck), "alerted": alerted}


@log_async_operation("scan_stuck_webhook_receipts")
async def scan_stuck_receipts(
    session_factory: async_sessionmaker[AsyncSession],
    worker_id: str,
) -> dict[str, Any]:
    return await _run_singleton(session_factory, RECEIPT_SCAN_JOB_NAME, worker_id, _scan_body)


@celery_app.task(name="relay.workers.tasks.run_dispatch_cycle")
def run_dispatch_cycle():
    """Lease and deliver one batch of due events"""

    async def _run():
        async with get_task_session_factory() as factory:
            return await dispatch_cycle(factory, resolve_worker_id("celery"))

    return run_async(_run())


@celery_app.task(name="relay.workers.tasks.reap_expired_leases")
def reap_expired_leases():
    """Return rows leased by crashed workers to the queue"""

    async def _run():
        async with get_task_session_factory() as factory:
            return await reap_leases(factory, resolve_worker_id("celery"))

    return run_async(_run())


@celery_app.task(name="relay.workers.tasks.scan_stuck_webhook_receipts")
def scan_stuck_webhook_receipts():
    """Alert on webhook receipts still 'received' after the stuck threshold"""

    async def _run():
        async with get_task_session_factory() as factory:
            return await scan_stuck_receipts(factory, resolve_worker_id("celery"))

    return run_async(_run())
