"""
Exception classes for Enforcement Orchestrator

Provides the error taxonomy used across the enforcement core: queue and storage
failures, provider failures (transient, rate limited, credential, circuit open),
and the control-flow signals a worker uses to reschedule or stop a job.
"""

import asyncio
from typing import Optional, Dict, Any


class EnforcementError(Exception):
    """Base exception for all enforcement orchestrator errors."""

    # Whether a job failing with this error may be retried by the queue
    retryable = True

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class JobNotFoundError(EnforcementError):
    """Raised when a requested job cannot be found."""

    retryable = False

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} not found",
            error_code="JOB_NOT_FOUND",
            details={"job_id": job_id}
        )


class BatchNotFoundError(EnforcementError):
    """Raised when a requested action batch cannot be found."""

    retryable = False

    def __init__(self, batch_id: str):
        super().__init__(
            f"Batch {batch_id} not found",
            error_code="BATCH_NOT_FOUND",
            details={"batch_id": batch_id}
        )


class JobSubmissionError(EnforcementError):
    """Raised when a plan or job cannot be enqueued."""

    def __init__(self, message: str, idempotency_key: Optional[str] = None):
        super().__init__(
            f"Job submission failed: {message}",
            error_code="JOB_SUBMISSION_ERROR",
            details={"idempotency_key": idempotency_key}
        )


class ConfigurationError(EnforcementError):
    """Raised when there's an error in configuration."""

    retryable = False

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class DatabaseError(EnforcementError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class QueueError(EnforcementError):
    """Raised when queue operations fail."""

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Queue operation '{operation}' failed: {message}",
            error_code="QUEUE_ERROR",
            details={"operation": operation}
        )


class ValidationError(EnforcementError):
    """Raised when input validation fails."""

    retryable = False

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for field '{field}': {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": value}
        )


class OrchestratorError(EnforcementError):
    """General orchestrator error."""

    def __init__(self, message: str, component: Optional[str] = None):
        super().__init__(
            message,
            error_code="ORCHESTRATOR_ERROR",
            details={"component": component}
        )


# Provider errors

class ProviderError(EnforcementError):
    """Base class for failures reported by a provider adapter."""

    def __init__(
        self,
        provider: str,
        message: str,
        error_code: str = "UNKNOWN",
        details: Optional[Dict[str, Any]] = None
    ):
        merged = {"provider": provider}
        merged.update(details or {})
        super().__init__(message, error_code=error_code, details=merged)
        self.provider = provider


class TransientProviderError(ProviderError):
    """5xx response, timeout or connection reset for a whole provider call."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None, error_code: str = "SERVER_ERROR"):
        super().__init__(
            provider,
            f"Transient provider failure: {message}",
            error_code=error_code,
            details={"status_code": status_code}
        )
        self.status_code = status_code


class RateLimitedError(ProviderError):
    """Provider signalled that the request budget is exhausted."""

    def __init__(self, provider: str, retry_after: Optional[float] = None, message: str = "rate limit exceeded"):
        super().__init__(
            provider,
            f"Provider {provider} rate limited: {message}",
            error_code="RATE_LIMITED",
            details={"retry_after": retry_after}
        )
        self.retry_after = retry_after


class CredentialError(ProviderError):
    """Expired credential or missing scope. Fatal for the batch."""

    retryable = False

    def __init__(
        self,
        provider: str,
        message: str,
        owner_id: Optional[str] = None,
        refreshable: bool = True,
        error_code: str = "UNAUTHORIZED"
    ):
        super().__init__(
            provider,
            f"Credential error for {provider}: {message}",
            error_code=error_code,
            details={"owner_id": owner_id, "refreshable": refreshable}
        )
        self.owner_id = owner_id
        self.refreshable = refreshable


class CircuitOpenError(ProviderError):
    """The provider circuit is open; the job should be requeued with a delay."""

    def __init__(self, provider: str, retry_after_seconds: float):
        super().__init__(
            provider,
            f"Circuit open for provider {provider}, retry in {retry_after_seconds:.1f}s",
            error_code="CIRCUIT_OPEN",
            details={"retry_after_seconds": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds


# Execution control

class ExecutionSuspended(EnforcementError):
    """Raised when a batch must wait longer than the job may block a worker."""

    def __init__(self, batch_id: str, resume_after_seconds: float, reason: str):
        super().__init__(
            f"Batch {batch_id} suspended for {resume_after_seconds:.1f}s: {reason}",
            error_code="EXECUTION_SUSPENDED",
            details={"batch_id": batch_id, "resume_after_seconds": resume_after_seconds, "reason": reason}
        )
        self.batch_id = batch_id
        self.resume_after_seconds = resume_after_seconds
        self.reason = reason


class JobCancelledError(EnforcementError):
    """Raised by a job handler after it stopped early on a cancel request."""

    retryable = False

    def __init__(self, job_id: str, result: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Job {job_id} cancelled",
            error_code="JOB_CANCELLED",
            details={"job_id": job_id}
        )
        self.job_id = job_id
        self.result = result or {}


class RollbackError(EnforcementError):
    """Raised when a rollback cannot be constructed for a batch."""

    retryable = False

    def __init__(self, batch_id: str, message: str):
        super().__init__(
            f"Rollback of batch {batch_id} failed: {message}",
            error_code="ROLLBACK_ERROR",
            details={"batch_id": batch_id}
        )


class JobTimeoutError(EnforcementError):
    """Raised when a job exceeds its wall-clock ceiling."""

    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(
            f"Job {job_id} exceeded timeout of {timeout_seconds}s",
            error_code="JOB_TIMEOUT",
            details={"job_id": job_id, "timeout_seconds": timeout_seconds}
        )


def classify_provider_error(error: BaseException) -> str:
    """Map an exception raised by a provider call onto an error code."""
    if isinstance(error, ProviderError):
        return error.error_code or "UNKNOWN"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "TIMEOUT"
    if isinstance(error, (ConnectionError, OSError)):
        return "CONNECTION"
    return "UNKNOWN"

