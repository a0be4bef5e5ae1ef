"""
Job Lock & State Store - at most one worker runs a named job at a time.

Each job owns one ``job_states`` row. A worker holds the job while its lease
(locked_by, locked_at) is fresh; an expired lease can be taken over by anyone.
The row also carries resumable state guarded by a SHA-256 checksum of its
canonical JSON, verified before every overwrite.
"""
from __future__ import annotations

import hashlib
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import as_naive_utc
from relay.core.config import settings
from relay.core.exceptions import ChecksumMismatchError, LockHeldError, LockLostError, ValidationException
from relay.core.logging import get_logger
from relay.db.models.job_state import JobState

logger = get_logger(__name__)


def canonical_json(state: Any) -> str:
    return json.dumps(state, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_state_checksum(state: Any) -> str:
    return hashlib.sha256(canonical_json(state).encode("utf-8")).hexdigest()


def _normalise_state(state: Any) -> Any:
    """Round-trip through JSON so what is stored is exactly what gets hashed."""
    try:
        return json.loads(canonical_json(state))
    except (TypeError, ValueError) as e:
        raise ValidationException(f"Job state is not JSON serialisable: {e}", field="state") from e


def _as_timedelta(value: timedelta | float | int | None, default_seconds: int) -> timedelta:
    if value is None:
        return timedelta(seconds=default_seconds)
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class JobLockService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, job_name: str) -> JobState | None:
        result = await self.db.execute(
            select(JobState)
            .where(JobState.job_name == job_name)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def try_acquire(
        self,
        job_name: str,
        worker_id: str,
        lease_timeout: timedelta | float | None = None,
        now: datetime | None = None,
    ) -> JobState:
        """
        Take the lease on ``job_name`` for ``worker_id``.

        Succeeds when the job is unlocked, its lease expired, or it is already
        held by ``worker_id`` (re-entrant refresh). The row is created on
        first use. Raises LockHeldError otherwise.
        """
        now = as_naive_utc(now)
        cutoff = now - _as_timedelta(lease_timeout, settings.JOB_LEASE_TIMEOUT_SECONDS)

        claimed = await self.db.execute(
            update(JobState)
            .where(
                JobState.job_name == job_name,
                or_(
                    JobState.locked_by.is_(None),
                    JobState.locked_at.is_(None),
                    JobState.locked_at < cutoff,
                    JobState.locked_by == worker_id,
                ),
            )
            .values(locked_by=worker_id, locked_at=now)
            .execution_options(synchronize_session=False)
        )

        if claimed.rowcount != 1:
            # no claimable row: either the job is new or someone else holds it
            try:
                async with self.db.begin_nested():
                    self.db.add(
                        JobState(
                            job_name=job_name,
                            state={},
                            checksum=compute_state_checksum({}),
                            locked_by=worker_id,
                            locked_at=now,
                        )
                    )
            except IntegrityError:
                await self.db.commit()
                holder = await self._load(job_name)
                logger.info(
                    "Job lease held by another worker",
                    extra_data={
                        "job_name": job_name,
                        "worker_id": worker_id,
                        "locked_by": holder.locked_by if holder else None,
                    }
                )
                raise LockHeldError(job_name, holder.locked_by if holder else None)

        await self.db.commit()
        job = await self._load(job_name)
        logger.info(
            "Job lease acquired",
            extra_data={"job_name": job_name, "worker_id": worker_id}
        )
        return job

    async def heartbeat(
        self,
        job_name: str,
        worker_id: str,
        now: datetime | None = None,
    ) -> None:
        """Refresh the lease. LockLostError if ``worker_id`` no longer holds it."""
        result = await self.db.execute(
            update(JobState)
            .where(JobState.job_name == job_name, JobState.locked_by == worker_id)
            .values(locked_at=as_naive_utc(now))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            logger.warning(
                "Job lease lost before heartbeat",
                extra_data={"job_name": job_name, "worker_id": worker_id}
            )
            raise LockLostError(job_name, worker_id)
        await self.db.commit()

    async def commit_state(
        self,
        job_name: str,
        worker_id: str,
        new_state: Any,
    ) -> JobState:
        """
        Persist ``new_state`` for a job held by ``worker_id``.

        The stored state is re-hashed first; a mismatch means the row was
        corrupted or written outside this service and is fatal. The write is
        conditional on both the holder and the previous checksum.
        """
        job = await self._load(job_name)
        if job is None or job.locked_by != worker_id:
            raise LockLostError(job_name, worker_id)

        actual = compute_state_checksum(job.state)
        if actual != job.checksum:
            logger.critical(
                "Job state checksum mismatch",
                extra_data={
                    "job_name": job_name,
                    "worker_id": worker_id,
                    "stored_checksum": job.checksum,
                    "computed_checksum": actual,
                }
            )
            raise ChecksumMismatchError(job_name, expected=job.checksum, actual=actual)

        state = _normalise_state(new_state)
        checksum = compute_state_checksum(state)

        result = await self.db.execute(
            update(JobState)
            .where(
                JobState.job_name == job_name,
                JobState.locked_by == worker_id,
                JobState.checksum == job.checksum,
            )
            .values(state=state, checksum=checksum)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            raise LockLostError(job_name, worker_id)

        await self.db.commit()
        logger.debug(
            "Job state committed",
            extra_data={"job_name": job_name, "worker_id": worker_id, "checksum": checksum}
        )
        return await self._load(job_name)

    async def release(self, job_name: str, worker_id: str) -> bool:
        """Drop the lease if ``worker_id`` holds it. Returns whether anything changed."""
        result = await self.db.execute(
            update(JobState)
            .where(JobState.job_name == job_name, JobState.locked_by == worker_id)
            .values(locked_by=None, locked_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        released = result.rowcount == 1
        if released:
            logger.info(
                "Job lease released",
                extra_data={"job_name": job_name, "worker_id": worker_id}
            )
        return released

    async def get_state(self, job_name: str) -> Any | None:
        """Last committed state of a job, None if the job never ran."""
        job = await self._load(job_name)
        return job.state if job is not None else None

    async def list_jobs(self) -> list[JobState]:
        result = await self.db.execute(
            select(JobState)
            .order_by(JobState.job_name.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


class JobHandle:
    """What a singleton job body gets: its state plus lease operations."""

    def __init__(self, service: JobLockService, job: JobState, worker_id: str):
        self._service = service
        self.job_name = job.job_name
        self.worker_id = worker_id
        self.state: Any = job.state

    async def heartbeat(self) -> None:
        await self._service.heartbeat(self.job_name, self.worker_id)

    async def commit(self, new_state: Any) -> None:
        job = await self._service.commit_state(self.job_name, self.worker_id, new_state)
        self.state = job.state


@asynccontextmanager
async def singleton_job(
    db: AsyncSession,
    job_name: str,
    worker_id: str,
    lease_timeout: timedelta | float | None = None,
) -> AsyncIterator[JobHandle]:
    """
    Run a block as the single holder of ``job_name``.

    Raises LockHeldError without running the block if another worker holds a
    fresh lease. The lease is released on exit, including on error.
    """
    service = JobLockService(db)
    job = await service.try_acquire(job_name, worker_id, lease_timeout)
    try:
        yield JobHandle(service, job, worker_id)
    finally:
        await service.release(job_name, worker_id)
