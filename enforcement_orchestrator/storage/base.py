"""
Storage interfaces for batches, checkpoints and jobs.

Services depend only on these abstract classes; the in-memory and Postgres
backends implement them.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.action import ActionBatch, ActionItem
from ..models.checkpoint import BatchCheckpoint
from ..models.job import Job, JobStatus, JobType


class BatchRepository(ABC):
    """Durable record of action batches and their items."""

    @abstractmethod
    async def create_batch(self, batch: ActionBatch) -> Tuple[ActionBatch, bool]:
        """
        Insert a batch with its items unless one with the same idempotency key exists.

        Returns:
            (stored batch, created) where created is False if an existing batch was returned
        """

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Optional[ActionBatch]:
        """Get a batch, including its items."""

    @abstractmethod
    async def get_batch_by_key(self, idempotency_key: str) -> Optional[ActionBatch]:
        """Get a batch by its idempotency key, including its items."""

    @abstractmethod
    async def save_batch(self, batch: ActionBatch) -> None:
        """Persist batch header fields (status, summary, timestamps)."""

    @abstractmethod
    async def save_items(self, items: Sequence[ActionItem]) -> None:
        """Persist item state for items that already belong to a stored batch."""

    @abstractmethod
    async def list_batches(self, owner_id: Optional[str] = None, limit: int = 50) -> List[ActionBatch]:
        """List recent batches without items."""


class CheckpointStore(ABC):
    """Durable progress marker per batch."""

    @abstractmethod
    async def get(self, batch_id: str) -> Optional[BatchCheckpoint]:
        """Get the checkpoint for a batch."""

    @abstractmethod
    async def save(self, checkpoint: BatchCheckpoint) -> bool:
        """
        Store a checkpoint unless it would move progress backwards.

        Returns:
            True if stored, False if a more advanced checkpoint already exists
        """

    @abstractmethod
    async def clear(self, batch_id: str) -> None:
        """Remove the checkpoint for a finished batch."""


class JobStore(ABC):
    """Durable priority queue of jobs."""

    @abstractmethod
    async def insert(self, job: Job) -> Job:
        """Insert a new job, assigning its FIFO sequence number."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""

    @abstractmethod
    async def update(self, job: Job, expected_worker: Optional[str] = None) -> bool:
        """
        Persist job state.

        A cancel request already recorded on the stored job is never cleared.

        Args:
            job: Job to persist
            expected_worker: When given, only update if the stored job is
                still running under this worker's lease

        Returns:
            True if the update was applied
        """

    @abstractmethod
    async def claim_next(self, worker_id: str, now: datetime) -> Optional[Job]:
        """
        Atomically claim the next claimable job.

        Highest priority first, FIFO within a priority. The claimed job is
        returned in RUNNING state with its attempt count incremented.
        """

    @abstractmethod
    async def heartbeat(self, job_id: str, worker_id: str, now: datetime) -> bool:
        """Refresh the heartbeat of a job leased by ``worker_id``."""

    @abstractmethod
    async def request_cancel(self, job_id: str) -> Optional[Job]:
        """Set the cancel flag on a job and return it."""

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Job]:
        """List jobs, newest first."""

    @abstractmethod
    async def find_active_for_batch(self, batch_id: str, job_type: JobType = JobType.EXECUTE_BATCH) -> Optional[Job]:
        """Queued or running job of ``job_type`` for ``batch_id``, if any."""

    @abstractmethod
    async def find_stale_running(self, heartbeat_before: datetime) -> List[Job]:
        """Running jobs whose last heartbeat is older than the cutoff."""

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        """Number of jobs in each status."""

    @abstractmethod
    async def delete_finished_before(self, cutoff: datetime) -> int:
        """
        Delete finished jobs older than ``cutoff``.

        Succeeded, failed and cancelled jobs are aged by completion time (update
        time when unset), dead-letter jobs by creation time.

        Returns:
            Number of jobs deleted
        """
