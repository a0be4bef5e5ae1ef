"""
Custom Exception Hierarchy

Structured exceptions shared by the dispatch queue, the webhook intake guard,
the job lock store and the operator API.

Policy by family:
- ValidationException / NotFoundException: caller bugs, never retried.
- ContentionError subclasses: expected under concurrency, the caller simply
  tries again on its next cycle. Never fatal for a worker.
- ExternalServiceException subclasses: transport problems, retried with backoff.
- ChecksumMismatchError: integrity violation, fatal.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Dispatch queue errors (2xxx)
    DISPATCH_ENTRY_NOT_FOUND = "ERR_2001"
    DISPATCH_STALE_LEASE = "ERR_2002"
    DISPATCH_INVALID_STATUS = "ERR_2003"
    EVENT_NOT_FOUND = "ERR_2004"

    # Job lock errors (3xxx)
    JOB_LOCK_HELD = "ERR_3001"
    JOB_LOCK_LOST = "ERR_3002"
    JOB_STATE_CHECKSUM_MISMATCH = "ERR_3003"

    # External service errors (5xxx)
    TRANSPORT_FAILURE = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class ContentionError(AppException):
    """Base for expected races between workers (lost CAS, lease held elsewhere)"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class StaleLeaseError(ContentionError):
    """Raised when a worker reports on a queue entry it no longer holds"""

    def __init__(self, entry_id: int, worker_id: str):
        super().__init__(
            message=f"Dispatch entry {entry_id} is not leased by {worker_id}",
            error_code=ErrorCode.DISPATCH_STALE_LEASE,
            details={"entry_id": entry_id, "worker_id": worker_id}
        )
        self.entry_id = entry_id
        self.worker_id = worker_id


class LockHeldError(ContentionError):
    """Raised when a job lease is held by another worker and has not expired"""

    def __init__(self, job_name: str, holder: str | None = None):
        super().__init__(
            message=f"Job '{job_name}' is locked by another worker",
            error_code=ErrorCode.JOB_LOCK_HELD,
            details={"job_name": job_name, "locked_by": holder}
        )
        self.job_name = job_name
        self.holder = holder


class LockLostError(ContentionError):
    """Raised when a worker acts on a job lease that is no longer its own"""

    def __init__(self, job_name: str, worker_id: str):
        super().__init__(
            message=f"Job '{job_name}' lease is no longer held by {worker_id}",
            error_code=ErrorCode.JOB_LOCK_LOST,
            details={"job_name": job_name, "worker_id": worker_id}
        )
        self.job_name = job_name
        self.worker_id = worker_id


class ChecksumMismatchError(AppException):
    """Raised when a persisted job state does not match its stored checksum"""

    def __init__(self, job_name: str, expected: str, actual: str):
        super().__init__(
            message=f"State checksum mismatch for job '{job_name}'",
            error_code=ErrorCode.JOB_STATE_CHECKSUM_MISMATCH,
            status_code=500,
            details={"job_name": job_name, "expected": expected, "actual": actual}
        )
        self.job_name = job_name


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class TransportFailure(ExternalServiceException):
    """Raised by a delivery transport when an event could not be delivered.

    ``non_retryable=True`` marks the failure as permanent (e.g. the consumer
    rejected the payload) and sends the queue entry straight to ``failed``.
    """

    def __init__(
        self,
        message: str,
        *,
        transport: str = "transport",
        non_retryable: bool = False,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name=transport,
            message=message,
            error_code=ErrorCode.TRANSPORT_FAILURE,
            details=details
        )
        self.non_retryable = non_retryable
        self.details["non_retryable"] = non_retryable


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} delivery timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
