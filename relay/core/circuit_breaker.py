"""
Circuit Breaker for delivery transports

One breaker per transport name. While a transport keeps failing the breaker
opens and the worker pool stops calling it, reporting leased rows as
retryable failures instead. After ``recovery_seconds`` a limited number of
probe calls are let through (half-open); enough successes close it again.
A non-retryable ``TransportFailure`` counts as a reply, not a failure: the
consumer is reachable and refused that one payload.
"""
import asyncio
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
from dataclasses import dataclass

from relay.core.config import settings
from relay.core.logging import get_logger
from relay.core.exceptions import CircuitBreakerOpenError, TransportFailure

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"        # calls pass through
    OPEN = "open"            # calls rejected
    HALF_OPEN = "half_open"  # probing


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_seconds: float = 30.0
    half_open_max_calls: int = 3


@dataclass
class _BreakerCounters:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    opened_at: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """Per-transport circuit breaker.

    Instances are process-wide singletons keyed by name (see ``get_instance``).
    Counters are guarded by a ``threading.Lock`` since Celery tasks may drive
    the same breaker from different event loops.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._counters = _BreakerCounters()
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        if name not in cls._instances:
            with cls._instances_lock:
                if name not in cls._instances:
                    cls._instances[name] = cls(name, config)
        return cls._instances[name]

    @classmethod
    def all_instances(cls) -> list["CircuitBreaker"]:
        with cls._instances_lock:
            return list(cls._instances.values())

    @classmethod
    def reset_all(cls) -> None:
        """Forget every breaker (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._counters.state

    @property
    def is_closed(self) -> bool:
        return self._counters.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._counters.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._counters.state == CircuitState.HALF_OPEN

    def _recovery_elapsed(self) -> bool:
        return time.monotonic() - self._counters.opened_at >= self.config.recovery_seconds

    def _move_to(self, new_state: CircuitState) -> None:
        old_state = self._counters.state
        self._counters.state = new_state

        if new_state == CircuitState.OPEN:
            self._counters.opened_at = time.monotonic()
        elif new_state == CircuitState.HALF_OPEN:
            self._counters.half_open_calls = 0
            self._counters.success_count = 0
        elif new_state == CircuitState.CLOSED:
            self._counters.failure_count = 0
            self._counters.success_count = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.name}' {old_state.value} -> {new_state.value}",
            extra_data={
                "breaker": self.name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "failure_count": self._counters.failure_count,
            }
        )

    def record_success(self) -> None:
        with self._lock:
            if self._counters.state == CircuitState.HALF_OPEN:
                self._counters.success_count += 1
                if self._counters.success_count >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            elif self._counters.state == CircuitState.CLOSED:
                self._counters.failure_count = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._counters.failure_count += 1
            logger.debug(
                f"Circuit breaker '{self.name}' recorded failure",
                extra_data={
                    "breaker": self.name,
                    "failure_count": self._counters.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                }
            )
            if self._counters.state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN)
            elif (
                self._counters.state == CircuitState.CLOSED
                and self._counters.failure_count >= self.config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    def allow_call(self) -> bool:
        """True when a call may proceed. May move OPEN -> HALF_OPEN."""
        with self._lock:
            if self._counters.state == CircuitState.CLOSED:
                return True

            if self._counters.state == CircuitState.OPEN:
                if not self._recovery_elapsed():
                    return False
                self._move_to(CircuitState.HALF_OPEN)

            if self._counters.half_open_calls < self.config.half_open_max_calls:
                self._counters.half_open_calls += 1
                return True
            return False

    def retry_after(self) -> float:
        """Seconds until the breaker will let a probe through (0 unless open)."""
        if self._counters.state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.recovery_seconds - (time.monotonic() - self._counters.opened_at)
        return max(0.0, remaining)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func(*args, **kwargs)`` under breaker protection.

        Raises:
            CircuitBreakerOpenError: the breaker rejected the call without running it
        """
        if not self.allow_call():
            raise CircuitBreakerOpenError(self.name, round(self.retry_after(), 1))

        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except TransportFailure as e:
            if e.non_retryable:
                self.record_success()
            else:
                self.record_failure(e)
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result

    def snapshot(self) -> dict[str, Any]:
        """Current state for the operator API"""
        return {
            "name": self.name,
            "state": self._counters.state.value,
            "failure_count": self._counters.failure_count,
            "failure_threshold": self.config.failure_threshold,
            "retry_after_seconds": round(self.retry_after(), 1),
        }


def get_transport_circuit_breaker(transport_name: str) -> CircuitBreaker:
    """Breaker guarding a delivery transport, configured from settings"""
    return CircuitBreaker.get_instance(
        f"transport:{transport_name}",
        CircuitBreakerConfig(
            failure_threshold=settings.TRANSPORT_FAILURE_THRESHOLD,
            success_threshold=2,
            recovery_seconds=settings.TRANSPORT_RECOVERY_SECONDS,
        )
    )
