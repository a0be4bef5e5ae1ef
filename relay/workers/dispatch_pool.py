"""
Dispatch Worker Pool - leases queue rows and drives them through a transport.

The pool runs up to ``concurrency`` deliveries at once. Each cycle leases at
most as many rows as there are free slots, so nothing sits leased while
waiting for a slot. Every delivery gets its own DB session and correlation ID,
is bounded by ``delivery_timeout`` and goes through the transport's circuit
breaker. Crashed deliveries are not the pool's concern: their leases expire
and the reaper puts them back.
"""
from __future__ import annotations

import asyncio
import os
import socket
from dataclasses import dataclass, asdict
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.core.circuit_breaker import CircuitBreaker, get_transport_circuit_breaker
from relay.core.config import settings
from relay.core.exceptions import (
    CircuitBreakerOpenError,
    ServiceTimeoutError,
    StaleLeaseError,
    TransportFailure,
)
from relay.core.logging import correlation_scope, get_logger
from relay.db.models.dispatch_queue_entry import DispatchQueueEntry, DispatchStatus
from relay.db.models.domain_event import DomainEvent
from relay.domain.services.dispatch_queue_service import DispatchQueueService
from relay.domain.services.transports import BaseDeliveryTransport, get_delivery_transport

logger = get_logger(__name__)

OUTCOME_DELIVERED = "delivered"
OUTCOME_RETRIED = "retried"
OUTCOME_FAILED = "failed"
OUTCOME_STALE = "stale"
OUTCOME_MISSING_EVENT = "missing_event"
OUTCOME_ERROR = "error"


def resolve_worker_id(prefix: str = "dispatch") -> str:
    """WORKER_ID if configured, otherwise prefix@hostname:pid."""
    if settings.WORKER_ID:
        return settings.WORKER_ID
    return f"{prefix}@{socket.gethostname()}:{os.getpid()}"


@dataclass
class DispatchCycleResult:
    leased: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    stale: int = 0
    missing_event: int = 0
    errors: int = 0

    def record(self, outcome: str) -> None:
        if outcome == OUTCOME_DELIVERED:
            self.delivered += 1
        elif outcome == OUTCOME_RETRIED:
            self.retried += 1
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
        elif outcome == OUTCOME_STALE:
            self.stale += 1
        elif outcome == OUTCOME_MISSING_EVENT:
            self.missing_event += 1
        else:
            self.errors += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DispatchWorkerPool:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        worker_id: str,
        transport: BaseDeliveryTransport | None = None,
        concurrency: int | None = None,
        batch_size: int | None = None,
        delivery_timeout: float | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        queue_options: dict[str, Any] | None = None,
    ):
        if not worker_id:
            raise ValueError("worker_id is required")
        self._session_factory = session_factory
        self.worker_id = worker_id
        self._transport = transport or get_delivery_transport()
        self.concurrency = concurrency or settings.DISPATCH_CONCURRENCY
        self.batch_size = batch_size or settings.DISPATCH_BATCH_SIZE
        self.delivery_timeout = delivery_timeout or settings.DISPATCH_DELIVERY_TIMEOUT_SECONDS
        self._breaker = circuit_breaker or get_transport_circuit_breaker(self._transport.transport_name)
        self._queue_options = queue_options or {}
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def free_slots(self) -> int:
        return max(0, self.concurrency - len(self._in_flight))

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _queue(self, db: AsyncSession) -> DispatchQueueService:
        return DispatchQueueService(db, **self._queue_options)

    async def _lease(self, count: int) -> list[DispatchQueueEntry]:
        async with self._session_factory() as db:
            return await self._queue(db).lease_batch(self.worker_id, count)

    async def run_once(self) -> DispatchCycleResult:
        """Lease up to the free slot count, deliver all of them, return the tally."""
        result = DispatchCycleResult()
        count = min(self.free_slots, self.batch_size)
        if count <= 0:
            return result

        entries = await self._lease(count)
        result.leased = len(entries)
        if not entries:
            return result

        tasks = [self._spawn(entry) for entry in entries]
        for outcome in await asyncio.gather(*tasks):
            result.record(outcome)

        logger.info(
            "Dispatch cycle completed",
            extra_data={"worker_id": self.worker_id, **result.to_dict()}
        )
        return result

    async def run_forever(self, poll_interval: float | None = None) -> None:
        """Keep every slot busy until ``stop()``; in-flight deliveries are drained on exit."""
        poll_interval = poll_interval or settings.DISPATCH_POLL_INTERVAL_SECONDS
        self._stopping.clear()
        logger.info(
            "Dispatch worker pool started",
            extra_data={
                "worker_id": self.worker_id,
                "concurrency": self.concurrency,
                "transport": self._transport.transport_name,
            }
        )

        while not self._stopping.is_set():
            leased: list[DispatchQueueEntry] = []
            count = min(self.free_slots, self.batch_size)
            if count > 0:
                try:
                    leased = await self._lease(count)
                except Exception as e:
                    logger.error(
                        "Leasing dispatch entries failed",
                        extra_data={"worker_id": self.worker_id, "error": str(e)},
                        exc_info=True
                    )
                for entry in leased:
                    self._spawn(entry)

            if leased and self.free_slots > 0:
                continue

            stop_waiter = asyncio.ensure_future(self._stopping.wait())
            try:
                await asyncio.wait(
                    {*self._in_flight, stop_waiter},
                    timeout=poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                stop_waiter.cancel()

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Dispatch worker pool stopped", extra_data={"worker_id": self.worker_id})

    def stop(self) -> None:
        self._stopping.set()

    def _spawn(self, entry: DispatchQueueEntry) -> asyncio.Task:
        task = asyncio.ensure_future(self._deliver(entry))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _invoke(self, event: DomainEvent, entry: DispatchQueueEntry) -> None:
        await asyncio.wait_for(self._transport.deliver(event, entry), timeout=self.delivery_timeout)

    async def _deliver(self, entry: DispatchQueueEntry) -> str:
        with correlation_scope(f"dispatch-{entry.id}"):
            try:
                async with self._session_factory() as db:
                    return await self._deliver_in_session(db, entry)
            except StaleLeaseError as e:
                logger.info(
                    "Lease lost before reporting, skipping",
                    extra_data={"entry_id": e.entry_id, "worker_id": self.worker_id}
                )
                return OUTCOME_STALE
            except Exception as e:
                # the lease stays in place and expires into the reaper
                logger.error(
                    "Reporting dispatch outcome failed",
                    extra_data={"entry_id": entry.id, "worker_id": self.worker_id, "error": str(e)},
                    exc_info=True
                )
                return OUTCOME_ERROR

    async def _deliver_in_session(self, db: AsyncSession, entry: DispatchQueueEntry) -> str:
        queue = self._queue(db)
        event = await db.get(DomainEvent, entry.event_id)

        if event is None:
            logger.warning(
                "Dispatch entry references a missing event, acknowledging",
                extra_data={"entry_id": entry.id, "event_id": entry.event_id}
            )
            await queue.report_success(
                entry.id,
                self.worker_id,
                metadata={**(entry.metadata_ or {}), "reason": "missing_event"},
            )
            return OUTCOME_MISSING_EVENT

        try:
            await self._breaker.call(self._invoke, event, entry)
        except CircuitBreakerOpenError as e:
            status = await queue.report_failure(entry.id, self.worker_id, e.message)
        except TransportFailure as e:
            status = await queue.report_failure(
                entry.id, self.worker_id, e.message, non_retryable=e.non_retryable
            )
        except asyncio.TimeoutError:
            timeout_error = ServiceTimeoutError(self._transport.transport_name, self.delivery_timeout)
            status = await queue.report_failure(entry.id, self.worker_id, timeout_error.message)
        except Exception as e:
            status = await queue.report_failure(entry.id, self.worker_id, f"{type(e).__name__}: {e}")
        else:
            await queue.report_success(entry.id, self.worker_id)
            return OUTCOME_DELIVERED

        return OUTCOME_RETRIED if status == DispatchStatus.PENDING else OUTCOME_FAILED
