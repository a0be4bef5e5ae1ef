"""
Operator endpoints - inspect and nudge the coordinator without DB access.

1. Transport circuit breakers
2. Dispatch queue: depth per status, entries, dead letters, manual requeue
3. Singleton jobs: lease holders and persisted state
4. Webhook receipts stuck in 'received'
"""
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from relay.api.dependencies.admin_auth import require_admin_api_key
from relay.core.circuit_breaker import CircuitBreaker
from relay.core.logging import get_logger
from relay.db.database import get_db
from relay.db.models.dispatch_queue_entry import DispatchStatus
from relay.domain.services.dispatch_queue_service import DispatchQueueService
from relay.domain.services.job_lock_service import JobLockService
from relay.domain.services.webhook_intake_service import WebhookIntakeGuard

logger = get_logger(__name__)

router = APIRouter()

_AUTH_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class CircuitBreakerStatusResponse(BaseModel):
    name: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    failure_threshold: int
    retry_after_seconds: float


class DispatchSummaryResponse(BaseModel):
    pending: int = 0
    processing: int = 0
    delivered: int = 0
    failed: int = 0
    total: int = 0
    oldest_pending_age_seconds: float | None = None


class DispatchEntryResponse(BaseModel):
    id: int
    event_id: int
    status: str
    priority: int
    attempt_count: int
    available_at: datetime | None
    locked_by: str | None
    locked_at: datetime | None
    delivered_at: datetime | None
    last_error: str | None
    metadata: dict


class DeadLetterResponse(BaseModel):
    id: int
    dispatch_id: int
    event_id: int
    event_type: str | None
    attempt_count: int
    failure_reason: str
    failure_message: str | None
    created_at: datetime | None


class RequeueResponse(BaseModel):
    entry_id: int
    previous_status: str
    new_status: str
    available_at: datetime | None


class JobStateResponse(BaseModel):
    job_name: str
    locked_by: str | None
    locked_at: datetime | None
    checksum: str
    state: Any
    updated_at: datetime | None


class WebhookReceiptResponse(BaseModel):
    id: int
    provider: str
    external_event_id: str
    status: str
    payload_hash: str
    received_at: datetime | None


def _status_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


# ─── 1. Circuit breakers ────────────────────────────────────────────────────

@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="Transport circuit breaker status",
    responses={200: {"description": "Every breaker created in this process"}, **_AUTH_RESPONSES},
)
async def get_circuit_breaker_status(
    _: None = Depends(require_admin_api_key),
) -> list[CircuitBreakerStatusResponse]:
    return [
        CircuitBreakerStatusResponse(**cb.snapshot())
        for cb in sorted(CircuitBreaker.all_instances(), key=lambda cb: cb.name)
    ]


# ─── 2. Dispatch queue ──────────────────────────────────────────────────────

@router.get(
    "/dispatch/summary",
    response_model=DispatchSummaryResponse,
    summary="Dispatch queue depth per status",
    responses={200: {"description": "Counts per status"}, **_AUTH_RESPONSES},
)
async def get_dispatch_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> DispatchSummaryResponse:
    queue = DispatchQueueService(db)
    counts = await queue.count_by_status()
    return DispatchSummaryResponse(
        **counts,
        total=sum(counts.values()),
        oldest_pending_age_seconds=await queue.oldest_pending_age_seconds(),
    )


@router.get(
    "/dispatch/entries",
    response_model=list[DispatchEntryResponse],
    summary="List dispatch queue entries",
    description="Defaults to failed entries, newest first.",
    responses={
        200: {"description": "Filtered entries"},
        400: {"description": "Unknown status"},
        **_AUTH_RESPONSES,
    },
)
async def get_dispatch_entries(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    entry_status: Optional[str] = Query(
        default="failed",
        description="pending, processing, delivered or failed",
    ),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[DispatchEntryResponse]:
    status_filter: DispatchStatus | None = None
    if entry_status:
        valid_statuses = {s.value for s in DispatchStatus}
        if entry_status not in valid_statuses:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status. Options: {', '.join(sorted(valid_statuses))}",
            )
        status_filter = DispatchStatus(entry_status)

    entries = await DispatchQueueService(db).list_entries(status_filter, limit)
    return [
        DispatchEntryResponse(
            id=entry.id,
            event_id=entry.event_id,
            status=_status_value(entry.status),
            priority=entry.priority,
            attempt_count=entry.attempt_count,
            available_at=entry.available_at,
            locked_by=entry.locked_by,
            locked_at=entry.locked_at,
            delivered_at=entry.delivered_at,
            last_error=entry.last_error,
            metadata=entry.metadata_ or {},
        )
        for entry in entries
    ]


@router.get(
    "/dispatch/dead-letters",
    response_model=list[DeadLetterResponse],
    summary="Terminally failed deliveries",
    responses={200: {"description": "Dead letters, newest first"}, **_AUTH_RESPONSES},
)
async def get_dead_letters(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[DeadLetterResponse]:
    letters = await DispatchQueueService(db).list_dead_letters(limit)
    return [
        DeadLetterResponse(
            id=letter.id,
            dispatch_id=letter.dispatch_id,
            event_id=letter.event_id,
            event_type=letter.event_type,
            attempt_count=letter.attempt_count,
            failure_reason=letter.failure_reason,
            failure_message=letter.failure_message,
            created_at=letter.created_at,
        )
        for letter in letters
    ]


@router.post(
    "/dispatch/entries/{entry_id}/requeue",
    response_model=RequeueResponse,
    summary="Requeue a failed entry",
    description="Moves a failed entry back to pending with a fresh attempt budget.",
    responses={
        200: {"description": "Entry requeued"},
        400: {"description": "Entry is not failed"},
        404: {"description": "Entry not found"},
        **_AUTH_RESPONSES,
    },
)
async def requeue_dispatch_entry(
    entry_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> RequeueResponse:
    # NotFoundException / ValidationException go through the AppException handler
    entry = await DispatchQueueService(db).requeue_failed(entry_id)
    return RequeueResponse(
        entry_id=entry.id,
        previous_status=DispatchStatus.FAILED.value,
        new_status=_status_value(entry.status),
        available_at=entry.available_at,
    )


# ─── 3. Singleton jobs ──────────────────────────────────────────────────────

@router.get(
    "/jobs",
    response_model=list[JobStateResponse],
    summary="Singleton job leases and state",
    responses={200: {"description": "All known jobs"}, **_AUTH_RESPONSES},
)
async def get_jobs(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> list[JobStateResponse]:
    jobs = await JobLockService(db).list_jobs()
    return [
        JobStateResponse(
            job_name=job.job_name,
            locked_by=job.locked_by,
            locked_at=job.locked_at,
            checksum=job.checksum,
            state=job.state,
            updated_at=job.updated_at,
        )
        for job in jobs
    ]


# ─── 4. Webhook receipts ────────────────────────────────────────────────────

@router.get(
    "/webhooks/stuck",
    response_model=list[WebhookReceiptResponse],
    summary="Webhook receipts stuck in received",
    responses={200: {"description": "Oldest first"}, **_AUTH_RESPONSES},
)
async def get_stuck_receipts(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    older_than_minutes: Optional[int] = Query(default=None, ge=1, le=10080),
    limit: int = Query(default=100, ge=1, le=500),
) -> list[WebhookReceiptResponse]:
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes else None
    receipts = await WebhookIntakeGuard(db).find_stuck_receipts(older_than, limit=limit)
    return [
        WebhookReceiptResponse(
            id=receipt.id,
            provider=receipt.provider,
            external_event_id=receipt.external_event_id,
            status=receipt.status,
            payload_hash=receipt.payload_hash,
            received_at=receipt.received_at,
        )
        for receipt in receipts
    ]
