"""
Storage backends for Enforcement Orchestrator

In-memory stores for single-process use and tests, PostgreSQL stores for
durable multi-worker deployments, and a JSON-file checkpoint store.
"""

from .base import BatchRepository, CheckpointStore, JobStore
from .memory import MemoryBatchRepository, MemoryCheckpointStore, MemoryJobStore
from .postgres import PostgresBatchRepository, PostgresCheckpointStore, PostgresJobStore
from .files import FileCheckpointStore

__all__ = [
    "BatchRepository",
    "CheckpointStore",
    "JobStore",
    "MemoryBatchRepository",
    "MemoryCheckpointStore",
    "MemoryJobStore",
    "PostgresBatchRepository",
    "PostgresCheckpointStore",
    "PostgresJobStore",
    "FileCheckpointStore"
]
