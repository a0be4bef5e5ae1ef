from datetime import timedelta

import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import integers

from relay.core.clock import utcnow
from relay.db.models.dispatch_queue_entry import DispatchStatus
from relay.domain.services.dispatch_queue_service import (
    DispatchQueueService,
    _exponential_backoff_seconds,
    calculate_backoff_seconds,
)


def _no_jitter(low: float, high: float) -> float:
    return 0.0


def _max_jitter(low: float, high: float) -> float:
    return high


def test_exponential_backoff_doubles_per_previous_attempt() -> None:
    base = 30
    max_backoff = 3600

    assert _exponential_backoff_seconds(0, base_seconds=base, max_backoff_seconds=max_backoff) == 30
    assert _exponential_backoff_seconds(1, base_seconds=base, max_backoff_seconds=max_backoff) == 60
    assert _exponential_backoff_seconds(6, base_seconds=base, max_backoff_seconds=max_backoff) == 1920


def test_exponential_backoff_is_capped() -> None:
    base = 30
    max_backoff = 3600

    # 30 * 2**7 = 3840 -> capped to 3600
    assert _exponential_backoff_seconds(7, base_seconds=base, max_backoff_seconds=max_backoff) == 3600
    assert _exponential_backoff_seconds(10_000, base_seconds=base, max_backoff_seconds=max_backoff) == 3600


def test_exponential_backoff_degenerate_inputs() -> None:
    assert _exponential_backoff_seconds(-3, base_seconds=30, max_backoff_seconds=900) == 30
    assert _exponential_backoff_seconds(2, base_seconds=0, max_backoff_seconds=900) == 0
    assert _exponential_backoff_seconds(2, base_seconds=900, max_backoff_seconds=60) == 60


def test_jitter_is_added_on_top_of_exponential_delay() -> None:
    assert calculate_backoff_seconds(2, base_seconds=10, max_backoff_seconds=900, jitter=_no_jitter) == 40
    assert calculate_backoff_seconds(2, base_seconds=10, max_backoff_seconds=900, jitter=_max_jitter) == 50


def test_jitter_never_pushes_past_cap() -> None:
    delay = calculate_backoff_seconds(50, base_seconds=30, max_backoff_seconds=900, jitter=_max_jitter)
    assert delay == 900


def test_zero_base_means_immediate_retry() -> None:
    assert calculate_backoff_seconds(5, base_seconds=0, max_backoff_seconds=900) == 0


@given(
    previous_attempts=integers(min_value=0, max_value=10_000),
    base=integers(min_value=1, max_value=600),
    extra=integers(min_value=0, max_value=7200),
)
@h_settings(max_examples=200, deadline=None)
def test_backoff_stays_within_bounds(previous_attempts: int, base: int, extra: int) -> None:
    max_backoff = base + extra
    delay = calculate_backoff_seconds(previous_attempts, base_seconds=base, max_backoff_seconds=max_backoff)
    floor = min(max_backoff, base * 2 ** min(previous_attempts, 64))
    assert floor <= delay <= max_backoff


@pytest.mark.asyncio
async def test_report_failure_schedules_capped_retry(db_session, event_factory) -> None:
    # a huge attempt count must not compute 2**attempt_count
    _, entry = await event_factory()
    entry.attempt_count = 10_000
    await db_session.commit()

    queue = DispatchQueueService(
        db_session, max_attempts=20_000, backoff_base_seconds=30, backoff_max_seconds=600
    )
    now = utcnow() + timedelta(seconds=1)
    leased = await queue.lease_batch("worker-a", 1, now=now)
    assert [e.id for e in leased] == [entry.id]

    status = await queue.report_failure(entry.id, "worker-a", "boom", now=now)
    assert status == DispatchStatus.PENDING

    await db_session.refresh(entry)
    assert entry.attempt_count == 10_001
    assert entry.available_at == now + timedelta(seconds=600)
