"""
Services package for Enforcement Orchestrator

Contains the service implementations of the enforcement core.
"""

from .rate_tracker import ProviderStateTracker
from .batch_planner import BatchPlanner, SubBatch
from .executor import IdempotentActionExecutor
from .rollback import RollbackEngine
from .queue_manager import QueueManager
from .worker_pool import WorkerPool
from .job_handlers import JobContext, JobHandler, ExecuteBatchHandler, RollbackBatchHandler, RefreshCredentialHandler
from .fault_tolerance import RetryPolicy, RetryDecision, RetryAction, exponential_backoff
from .progress import ProgressReporter
from .audit import AuditDispatcher, AuditRecord, AuditSink, LoggingAuditSink, HttpAuditSink

__all__ = [
    "ProviderStateTracker",
    "BatchPlanner",
    "SubBatch",
    "IdempotentActionExecutor",
    "RollbackEngine",
    "QueueManager",
    "WorkerPool",
    "JobContext",
    "JobHandler",
    "ExecuteBatchHandler",
    "RollbackBatchHandler",
    "RefreshCredentialHandler",
    "RetryPolicy",
    "RetryDecision",
    "RetryAction",
    "exponential_backoff",
    "ProgressReporter",
    "AuditDispatcher",
    "AuditRecord",
    "AuditSink",
    "LoggingAuditSink",
    "HttpAuditSink"
]
