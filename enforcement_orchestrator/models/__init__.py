"""
Data models for Enforcement Orchestrator

This module contains the data models used throughout the enforcement core:
action batches and items, jobs, provider rate/circuit state, checkpoints and
the validated plan input.
"""

# Action models
from .action import (
    ActionBatch,
    ActionItem,
    ActionKind,
    BatchError,
    BatchExecutionResult,
    BatchStatus,
    BatchSummary,
    EntityType,
    ItemStatus,
    RollbackResult,
    INVERSE_ACTIONS,
    JOB_FAILED,
    ROLLBACK_CONFLICT,
    derive_batch_status,
    make_idempotency_key
)

# Job models
from .job import (
    Job,
    JobStatus,
    JobType,
    JobPriority,
    JobProgress,
    JOB_STATUS_TRANSITIONS,
    can_transition_to,
    get_valid_transitions
)

# Provider state models
from .provider import (
    CircuitBreakerState,
    CircuitState,
    ItemResult,
    RateLimitState
)

from .checkpoint import BatchCheckpoint
from .plan import EnforcementPlan, PlannedAction, PlanOptions

__all__ = [
    # Action models
    "ActionBatch",
    "ActionItem",
    "ActionKind",
    "BatchError",
    "BatchExecutionResult",
    "BatchStatus",
    "BatchSummary",
    "EntityType",
    "ItemStatus",
    "RollbackResult",
    "INVERSE_ACTIONS",
    "JOB_FAILED",
    "ROLLBACK_CONFLICT",
    "derive_batch_status",
    "make_idempotency_key",

    # Job models
    "Job",
    "JobStatus",
    "JobType",
    "JobPriority",
    "JobProgress",
    "JOB_STATUS_TRANSITIONS",
    "can_transition_to",
    "get_valid_transitions",

    # Provider state models
    "CircuitBreakerState",
    "CircuitState",
    "ItemResult",
    "RateLimitState",

    # Checkpoint and plan
    "BatchCheckpoint",
    "EnforcementPlan",
    "PlannedAction",
    "PlanOptions"
]
