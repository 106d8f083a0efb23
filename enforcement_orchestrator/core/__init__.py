"""
Core package for Enforcement Orchestrator

Contains the orchestrator facade and the error taxonomy.
"""

from .orchestrator import EnforcementOrchestrator
from .exceptions import (
    EnforcementError,
    JobNotFoundError,
    BatchNotFoundError,
    JobSubmissionError,
    ConfigurationError,
    DatabaseError,
    QueueError,
    ValidationError,
    OrchestratorError,
    ProviderError,
    TransientProviderError,
    RateLimitedError,
    CredentialError,
    CircuitOpenError,
    ExecutionSuspended,
    JobCancelledError,
    RollbackError,
    JobTimeoutError,
    classify_provider_error
)

__all__ = [
    "EnforcementOrchestrator",
    "EnforcementError",
    "JobNotFoundError",
    "BatchNotFoundError",
    "JobSubmissionError",
    "ConfigurationError",
    "DatabaseError",
    "QueueError",
    "ValidationError",
    "OrchestratorError",
    "ProviderError",
    "TransientProviderError",
    "RateLimitedError",
    "CredentialError",
    "CircuitOpenError",
    "ExecutionSuspended",
    "JobCancelledError",
    "RollbackError",
    "JobTimeoutError",
    "classify_provider_error"
]
