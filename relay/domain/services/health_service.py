"""
Health checks for the coordinator.

- liveness: the process answers (no dependency checks)
- readiness: DB, Redis and the Celery broker respond, plus queue backlog and
  open transport breakers as informational fields
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.circuit_breaker import CircuitBreaker
from relay.core.config import settings
from relay.core.logging import get_logger
from relay.core.redis_client import get_redis
from relay.domain.services.dispatch_queue_service import DispatchQueueService

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# no infrastructure details in responses
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """Ping the Celery broker (Redis)."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def _queue_backlog(db: AsyncSession) -> dict[str, Any]:
    queue = DispatchQueueService(db)
    return {
        "counts": await queue.count_by_status(),
        "oldest_pending_age_seconds": await queue.oldest_pending_age_seconds(),
    }


async def check_readiness(db: AsyncSession) -> dict[str, Any]:
    """
    Dependency checks. ``status`` is "healthy" only when db, redis and celery
    are all "ok"; backlog and breakers never degrade the status on their own.
    """
    checks = {
        "db": await _check_db(db),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    result: dict[str, Any] = {
        "status": _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED,
        **checks,
        "open_breakers": [cb.name for cb in CircuitBreaker.all_instances() if cb.is_open],
    }
    if checks["db"] == _CHECK_OK:
        result["dispatch_queue"] = await _queue_backlog(db)

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)
    return result
