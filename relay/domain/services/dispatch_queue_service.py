"""
Dispatch Queue Service - transactional outbox with leases.

Producers enqueue a row in the same transaction that writes the event. Workers
lease rows, deliver them and report back. Every status or lease mutation is a
conditional UPDATE scoped by the state the caller believes the row is in, and
the affected rowcount decides who won. No read-modify-write across round trips.

    pending -> processing -> delivered
                          -> pending   (retryable failure, available_at pushed out)
                          -> failed    (non-retryable or attempts exhausted)
"""
from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import as_naive_utc
from relay.core.config import settings
from relay.core.exceptions import (
    ErrorCode,
    NotFoundException,
    StaleLeaseError,
    ValidationException,
)
from relay.core.logging import get_logger
from relay.db.models.dead_letter import DispatchDeadLetter
from relay.db.models.dispatch_queue_entry import DispatchQueueEntry, DispatchStatus
from relay.db.models.domain_event import DomainEvent

logger = get_logger(__name__)

_LAST_ERROR_MAX_CHARS = 2000


def _exponential_backoff_seconds(
    previous_attempts: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    base_seconds * 2**previous_attempts, capped at max_backoff_seconds.

    Never computes a huge power: once the exponent is past the point where the
    product would exceed the cap, returns the cap directly.
    """
    if previous_attempts < 0:
        previous_attempts = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # smallest k with base * 2**k >= max
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if previous_attempts >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << previous_attempts), max_backoff_seconds)


def calculate_backoff_seconds(
    previous_attempts: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
    jitter: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Delay before the next attempt.

    min(cap, base * 2**previous_attempts) + uniform(0, base), never above cap.
    ``previous_attempts`` counts failures before the one being handled, so the
    first retry waits roughly ``base_seconds``.
    """
    deterministic = _exponential_backoff_seconds(
        previous_attempts,
        base_seconds=base_seconds,
        max_backoff_seconds=max_backoff_seconds,
    )
    if base_seconds <= 0:
        return float(deterministic)
    return min(float(max_backoff_seconds), deterministic + jitter(0, base_seconds))


class DispatchQueueService:
    """
    Lease-based dispatch queue over ``domain_event_dispatch_queue``.

    ``enqueue`` participates in the caller's transaction. The leasing and
    reporting operations commit their own unit of work.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        max_attempts: int | None = None,
        backoff_base_seconds: int | None = None,
        backoff_max_seconds: int | None = None,
    ):
        self.db = db
        self.max_attempts = max_attempts or settings.DISPATCH_MAX_ATTEMPTS
        self.backoff_base_seconds = (
            settings.DISPATCH_BACKOFF_BASE_SECONDS if backoff_base_seconds is None else backoff_base_seconds
        )
        self.backoff_max_seconds = (
            settings.DISPATCH_BACKOFF_MAX_SECONDS if backoff_max_seconds is None else backoff_max_seconds
        )

    def _next_available_at(self, now: datetime, previous_attempts: int) -> datetime:
        delay = calculate_backoff_seconds(
            previous_attempts,
            base_seconds=self.backoff_base_seconds,
            max_backoff_seconds=self.backoff_max_seconds,
        )
        return now + timedelta(seconds=delay)

    async def _end_unit(self) -> None:
        """End the transaction of a conditional UPDATE that matched no row, keeping caller state loaded."""
        await self.db.commit()

    # ------------------------------------------------------------------
    # producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        event_id: int,
        *,
        priority: int = 0,
        available_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DispatchQueueEntry:
        """Add a pending row for ``event_id``. Flushes but does not commit."""
        event = await self.db.get(DomainEvent, event_id)
        if event is None:
            raise ValidationException(
                f"Cannot enqueue unknown event {event_id}",
                field="event_id",
                error_code=ErrorCode.EVENT_NOT_FOUND,
            )

        entry = DispatchQueueEntry(
            event_id=event_id,
            status=DispatchStatus.PENDING,
            priority=priority,
            available_at=as_naive_utc(available_at),
            attempt_count=0,
            metadata_=dict(metadata or {}),
        )
        self.db.add(entry)
        await self.db.flush()

        logger.debug(
            "Dispatch entry enqueued",
            extra_data={
                "entry_id": entry.id,
                "event_id": event_id,
                "event_type": event.event_type,
                "priority": priority,
            }
        )
        return entry

    # ------------------------------------------------------------------
    # worker side
    # ------------------------------------------------------------------

    async def lease_batch(
        self,
        worker_id: str,
        limit: int,
        now: datetime | None = None,
    ) -> list[DispatchQueueEntry]:
        """
        Claim up to ``limit`` eligible rows for ``worker_id``.

        Candidates are read in priority order (FOR UPDATE SKIP LOCKED on
        PostgreSQL, ignored elsewhere), then each is claimed with a
        compare-and-swap on ``status='pending'``. A candidate taken by a
        concurrent worker in between simply yields rowcount 0 and is skipped.
        """
        if limit <= 0:
            return []
        now = as_naive_utc(now)

        candidates = await self.db.execute(
            select(DispatchQueueEntry.id)
            .where(
                DispatchQueueEntry.status == DispatchStatus.PENDING,
                DispatchQueueEntry.available_at <= now,
            )
            .order_by(
                DispatchQueueEntry.priority.desc(),
                DispatchQueueEntry.available_at.asc(),
                DispatchQueueEntry.id.asc(),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        candidate_ids = list(candidates.scalars().all())
        if not candidate_ids:
            await self.db.commit()
            return []

        claimed_ids: list[int] = []
        for entry_id in candidate_ids:
            result = await self.db.execute(
                update(DispatchQueueEntry)
                .where(
                    DispatchQueueEntry.id == entry_id,
                    DispatchQueueEntry.status == DispatchStatus.PENDING,
                )
                .values(
                    status=DispatchStatus.PROCESSING,
                    locked_by=worker_id,
                    locked_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(entry_id)

        await self.db.commit()

        if not claimed_ids:
            return []

        rows = await self.db.execute(
            select(DispatchQueueEntry)
            .where(DispatchQueueEntry.id.in_(claimed_ids))
            .order_by(
                DispatchQueueEntry.priority.desc(),
                DispatchQueueEntry.available_at.asc(),
                DispatchQueueEntry.id.asc(),
            )
            .execution_options(populate_existing=True)
        )
        leased = list(rows.scalars().all())

        logger.info(
            "Leased dispatch entries",
            extra_data={
                "worker_id": worker_id,
                "requested": limit,
                "candidates": len(candidate_ids),
                "leased": len(leased),
            }
        )
        return leased

    async def report_success(
        self,
        entry_id: int,
        worker_id: str,
        *,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Mark a leased row delivered. StaleLeaseError if the lease is not ours."""
        now = as_naive_utc(now)
        values: dict[Any, Any] = {
            DispatchQueueEntry.status: DispatchStatus.DELIVERED,
            DispatchQueueEntry.delivered_at: now,
            DispatchQueueEntry.locked_by: None,
            DispatchQueueEntry.locked_at: None,
        }
        if metadata is not None:
            values[DispatchQueueEntry.metadata_] = metadata

        result = await self.db.execute(
            update(DispatchQueueEntry)
            .where(
                DispatchQueueEntry.id == entry_id,
                DispatchQueueEntry.status == DispatchStatus.PROCESSING,
                DispatchQueueEntry.locked_by == worker_id,
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._end_unit()
            raise StaleLeaseError(entry_id, worker_id)

        await self.db.commit()
        logger.info(
            "Dispatch entry delivered",
            extra_data={"entry_id": entry_id, "worker_id": worker_id}
        )

    async def report_failure(
        self,
        entry_id: int,
        worker_id: str,
        error: str,
        *,
        non_retryable: bool = False,
        now: datetime | None = None,
    ) -> DispatchStatus:
        """
        Record a failed delivery attempt for a row leased by ``worker_id``.

        Returns the new status: PENDING when another attempt is scheduled,
        FAILED when the row is terminal (and dead-lettered).
        """
        now = as_naive_utc(now)

        observed = (
            await self.db.execute(
                select(DispatchQueueEntry.attempt_count).where(
                    DispatchQueueEntry.id == entry_id,
                    DispatchQueueEntry.status == DispatchStatus.PROCESSING,
                    DispatchQueueEntry.locked_by == worker_id,
                )
            )
        ).scalar_one_or_none()
        if observed is None:
            await self._end_unit()
            raise StaleLeaseError(entry_id, worker_id)

        attempts = observed + 1
        terminal = non_retryable or attempts >= self.max_attempts
        error_text = (error or "")[:_LAST_ERROR_MAX_CHARS]

        values: dict[str, Any] = {
            "attempt_count": attempts,
            "last_error": error_text,
            "locked_by": None,
            "locked_at": None,
        }
        if terminal:
            values["status"] = DispatchStatus.FAILED
        else:
            values["status"] = DispatchStatus.PENDING
            values["available_at"] = self._next_available_at(now, observed)

        # attempt_count in the predicate makes this a CAS on the value read above
        result = await self.db.execute(
            update(DispatchQueueEntry)
            .where(
                DispatchQueueEntry.id == entry_id,
                DispatchQueueEntry.status == DispatchStatus.PROCESSING,
                DispatchQueueEntry.locked_by == worker_id,
                DispatchQueueEntry.attempt_count == observed,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._end_unit()
            raise StaleLeaseError(entry_id, worker_id)

        if terminal:
            reason = "non_retryable" if non_retryable else "max_attempts"
            await self._write_dead_letter(entry_id, attempts, reason, error_text)
            await self.db.commit()
            logger.error(
                "Dispatch entry failed permanently",
                extra_data={
                    "entry_id": entry_id,
                    "worker_id": worker_id,
                    "attempt_count": attempts,
                    "reason": reason,
                    "error": error_text,
                }
            )
            return DispatchStatus.FAILED

        await self.db.commit()
        logger.warning(
            "Dispatch attempt failed, retry scheduled",
            extra_data={
                "entry_id": entry_id,
                "worker_id": worker_id,
                "attempt_count": attempts,
                "available_at": values["available_at"].isoformat(),
                "error": error_text,
            }
        )
        return DispatchStatus.PENDING

    async def reap_expired_leases(
        self,
        lease_timeout: timedelta | float | None = None,
        now: datetime | None = None,
    ) -> list[int]:
        """
        Return crashed workers' rows to the queue.

        Every ``processing`` row leased before ``now - lease_timeout`` goes back
        to ``pending`` with attempt_count + 1 and a backoff, or to ``failed``
        once that increment reaches max_attempts. Each row is reclaimed with a
        CAS on the lease observed during the scan, so a worker that reports in
        the meantime wins. Returns the ids that were reaped.
        """
        now = as_naive_utc(now)
        if lease_timeout is None:
            lease_timeout = settings.DISPATCH_LEASE_TIMEOUT_SECONDS
        if not isinstance(lease_timeout, timedelta):
            lease_timeout = timedelta(seconds=lease_timeout)
        cutoff = now - lease_timeout

        expired = (
            await self.db.execute(
                select(
                    DispatchQueueEntry.id,
                    DispatchQueueEntry.attempt_count,
                    DispatchQueueEntry.locked_by,
                    DispatchQueueEntry.locked_at,
                )
                .where(
                    DispatchQueueEntry.status == DispatchStatus.PROCESSING,
                    DispatchQueueEntry.locked_at < cutoff,
                )
                .order_by(DispatchQueueEntry.locked_at.asc())
                .with_for_update(skip_locked=True)
            )
        ).all()

        reaped: list[int] = []
        dead: list[tuple[int, int, str | None]] = []
        for entry_id, observed, holder, locked_at in expired:
            attempts = observed + 1
            terminal = attempts >= self.max_attempts
            message = f"lease expired (held by {holder} since {locked_at.isoformat()})"
            values: dict[str, Any] = {
                "attempt_count": attempts,
                "last_error": message,
                "locked_by": None,
                "locked_at": None,
                "status": DispatchStatus.FAILED if terminal else DispatchStatus.PENDING,
            }
            if not terminal:
                values["available_at"] = self._next_available_at(now, observed)

            result = await self.db.execute(
                update(DispatchQueueEntry)
                .where(
                    DispatchQueueEntry.id == entry_id,
                    DispatchQueueEntry.status == DispatchStatus.PROCESSING,
                    DispatchQueueEntry.locked_by == holder,
                    DispatchQueueEntry.locked_at == locked_at,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue
            reaped.append(entry_id)
            if terminal:
                dead.append((entry_id, attempts, holder))
                await self._write_dead_letter(entry_id, attempts, "lease_expired", message)

        await self.db.commit()

        if reaped:
            logger.warning(
                "Reaped expired dispatch leases",
                extra_data={
                    "reaped": len(reaped),
                    "dead_lettered": len(dead),
                    "entry_ids": reaped[:50],
                    "lease_timeout_seconds": lease_timeout.total_seconds(),
                }
            )
        for entry_id, attempts, holder in dead:
            logger.error(
                "Dispatch entry failed permanently after lease expiry",
                extra_data={"entry_id": entry_id, "attempt_count": attempts, "locked_by": holder}
            )
        return reaped

    async def _write_dead_letter(
        self,
        entry_id: int,
        attempts: int,
        reason: str,
        message: str | None,
    ) -> None:
        entry = (
            await self.db.execute(
                select(DispatchQueueEntry.event_id, DispatchQueueEntry.metadata_).where(
                    DispatchQueueEntry.id == entry_id
                )
            )
        ).one()
        event = await self.db.get(DomainEvent, entry.event_id)
        self.db.add(
            DispatchDeadLetter(
                dispatch_id=entry_id,
                event_id=entry.event_id,
                event_type=event.event_type if event else None,
                attempt_count=attempts,
                failure_reason=reason,
                failure_message=message,
                event_payload=event.payload if event else None,
                metadata_=dict(entry.metadata_ or {}),
            )
        )
        await self.db.flush()

    # ------------------------------------------------------------------
    # operator side
    # ------------------------------------------------------------------

    async def count_by_status(self) -> dict[str, int]:
        """Queue depth per status, every status present (zero when empty)."""
        result = await self.db.execute(
            select(DispatchQueueEntry.status, func.count(DispatchQueueEntry.id))
            .group_by(DispatchQueueEntry.status)
        )
        counts = {status.value: 0 for status in DispatchStatus}
        for status, count in result.all():
            key = status.value if isinstance(status, DispatchStatus) else str(status)
            counts[key] = count
        return counts

    async def oldest_pending_age_seconds(self, now: datetime | None = None) -> float | None:
        """Age of the oldest eligible pending row, None when the queue is drained."""
        now = as_naive_utc(now)
        oldest = (
            await self.db.execute(
                select(func.min(DispatchQueueEntry.available_at)).where(
                    DispatchQueueEntry.status == DispatchStatus.PENDING,
                    DispatchQueueEntry.available_at <= now,
                )
            )
        ).scalar_one_or_none()
        if oldest is None:
            return None
        return max(0.0, (now - oldest).total_seconds())

    async def list_entries(
        self,
        status: DispatchStatus | None = None,
        limit: int = 50,
    ) -> list[DispatchQueueEntry]:
        query = select(DispatchQueueEntry)
        if status is not None:
            query = query.where(DispatchQueueEntry.status == status)
        query = query.order_by(DispatchQueueEntry.updated_at.desc(), DispatchQueueEntry.id.desc()).limit(limit)
        # rows mutated through Core updates are stale in the identity map
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_dead_letters(self, limit: int = 50) -> list[DispatchDeadLetter]:
        result = await self.db.execute(
            select(DispatchDeadLetter)
            .order_by(DispatchDeadLetter.created_at.desc(), DispatchDeadLetter.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def requeue_failed(
        self,
        entry_id: int,
        now: datetime | None = None,
    ) -> DispatchQueueEntry:
        """Operator retry: failed -> pending with a fresh attempt budget."""
        now = as_naive_utc(now)

        current = (
            await self.db.execute(
                select(DispatchQueueEntry)
                .where(DispatchQueueEntry.id == entry_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if current is None:
            raise NotFoundException(
                "DispatchQueueEntry", entry_id, error_code=ErrorCode.DISPATCH_ENTRY_NOT_FOUND
            )

        result = await self.db.execute(
            update(DispatchQueueEntry)
            .where(
                DispatchQueueEntry.id == entry_id,
                DispatchQueueEntry.status == DispatchStatus.FAILED,
            )
            .values(
                status=DispatchStatus.PENDING,
                attempt_count=0,
                available_at=now,
                locked_by=None,
                locked_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            status = current.status.value if isinstance(current.status, DispatchStatus) else str(current.status)
            await self._end_unit()
            raise ValidationException(
                f"Only failed entries can be requeued, current status: {status}",
                field="status",
                error_code=ErrorCode.DISPATCH_INVALID_STATUS,
                details={"entry_id": entry_id, "status": status},
            )

        await self.db.commit()
        await self.db.refresh(current)
        logger.info(
            "Dispatch entry requeued by operator",
            extra_data={"entry_id": entry_id, "previous_status": DispatchStatus.FAILED.value}
        )
        return current
