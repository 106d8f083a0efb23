"""
Enforcement Orchestrator

The enforcement-execution core of a music-library blocking system: it takes
planned actions ("remove track X from liked songs", "unfollow artist Y") and
applies them against rate-limited, partially unreliable provider APIs.

Key Features:
- Idempotent batch execution with before/after state capture
- Per-provider rate budgets and circuit breakers
- Checkpointed, resumable execution
- Full and partial rollback through inverse actions
- Durable priority job queue with retry, dead letter and a worker pool
- Structured logging, Prometheus metrics and audit records
- CLI interface

Usage:
    from enforcement_orchestrator import EnforcementOrchestrator, EnforcementPlan
    from enforcement_orchestrator.providers import ProviderAdapter

    orchestrator = EnforcementOrchestrator([MySpotifyAdapter("spotify")])
    await orchestrator.start()

    job_id = await orchestrator.enqueue_batch({
        "owner_id": "user-1",
        "provider": "spotify",
        "idempotency_key": "plan-2024-06-01",
        "actions": [
            {"entity_type": "track", "entity_id": "t1", "action": "remove_liked_song"}
        ]
    })

    status = await orchestrator.get_job_status(job_id)
    print(f"Job status: {status['status']}")
"""

__version__ = "1.0.0"
__author__ = "Enforcement Orchestrator Team"
__license__ = "MIT"

# Core orchestrator
from .core.orchestrator import EnforcementOrchestrator

# Data models
from .models.action import (
    ActionBatch,
    ActionItem,
    ActionKind,
    BatchExecutionResult,
    BatchStatus,
    BatchSummary,
    EntityType,
    ItemStatus,
    RollbackResult
)
from .models.job import Job, JobStatus, JobType, JobPriority, JobProgress
from .models.plan import EnforcementPlan, PlannedAction, PlanOptions
from .models.provider import ItemResult, CircuitState

# Provider interface
from .providers.base import ProviderAdapter, ProviderRegistry

# Services (for advanced usage)
from .services.rate_tracker import ProviderStateTracker
from .services.batch_planner import BatchPlanner
from .services.executor import IdempotentActionExecutor
from .services.rollback import RollbackEngine
from .services.queue_manager import QueueManager
from .services.worker_pool import WorkerPool

# Utilities
from .utils.config import OrchestratorConfig, ProviderSettings, load_config
from .utils.database import DatabaseManager
from .utils.logger import setup_logger, get_logger

# Exceptions
from .core.exceptions import (
    EnforcementError,
    JobNotFoundError,
    BatchNotFoundError,
    JobSubmissionError,
    ConfigurationError,
    DatabaseError,
    ValidationError,
    TransientProviderError,
    RateLimitedError,
    CredentialError,
    CircuitOpenError,
    RollbackError
)

__all__ = [
    # Core
    "EnforcementOrchestrator",

    # Models
    "ActionBatch",
    "ActionItem",
    "ActionKind",
    "BatchExecutionResult",
    "BatchStatus",
    "BatchSummary",
    "EntityType",
    "ItemStatus",
    "RollbackResult",
    "Job",
    "JobStatus",
    "JobType",
    "JobPriority",
    "JobProgress",
    "EnforcementPlan",
    "PlannedAction",
    "PlanOptions",
    "ItemResult",
    "CircuitState",

    # Providers
    "ProviderAdapter",
    "ProviderRegistry",

    # Services (for advanced usage)
    "ProviderStateTracker",
    "BatchPlanner",
    "IdempotentActionExecutor",
    "RollbackEngine",
    "QueueManager",
    "WorkerPool",

    # Utilities
    "OrchestratorConfig",
    "ProviderSettings",
    "load_config",
    "DatabaseManager",
    "setup_logger",
    "get_logger",

    # Exceptions
    "EnforcementError",
    "JobNotFoundError",
    "BatchNotFoundError",
    "JobSubmissionError",
    "ConfigurationError",
    "DatabaseError",
    "ValidationError",
    "TransientProviderError",
    "RateLimitedError",
    "CredentialError",
    "CircuitOpenError",
    "RollbackError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

# Quick start helper
def quick_start(providers, database_url: str = None) -> EnforcementOrchestrator:
    """
    Quick start helper for simple use cases.

    Args:
        providers: Provider adapters to register
        database_url: Optional PostgreSQL connection URL; in-memory storage when omitted

    Returns:
        Configured EnforcementOrchestrator instance

    Example:
        orchestrator = quick_start([MySpotifyAdapter("spotify")])
        await orchestrator.start()
        job_id = await orchestrator.enqueue_batch(plan)
    """
    config = OrchestratorConfig(database_url=database_url)
    return EnforcementOrchestrator.from_config(config, providers)
