"""
In-process storage backend.

Each store guards its state with an asyncio.Lock and hands out deep copies,
so callers cannot mutate stored records without going through the store.
Suitable for single-process deployments and tests.
"""

import asyncio
import copy
import itertools
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.action import ActionBatch, ActionItem
from ..models.checkpoint import BatchCheckpoint
from ..models.job import Job, JobStatus, JobType
from .base import BatchRepository, CheckpointStore, JobStore


class MemoryBatchRepository(BatchRepository):
    """Batches and items held in dictionaries."""

    def __init__(self):
        self._batches: Dict[str, ActionBatch] = {}
        self._by_key: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create_batch(self, batch: ActionBatch) -> Tuple[ActionBatch, bool]:
        async with self._lock:
            existing_id = self._by_key.get(batch.idempotency_key)
            if existing_id is not None:
                return copy.deepcopy(self._batches[existing_id]), False
            self._batches[batch.id] = copy.deepcopy(batch)
            self._by_key[batch.idempotency_key] = batch.id
            return copy.deepcopy(batch), True

    async def get_batch(self, batch_id: str) -> Optional[ActionBatch]:
        async with self._lock:
            batch = self._batches.get(batch_id)
            return copy.deepcopy(batch) if batch else None

    async def get_batch_by_key(self, idempotency_key: str) -> Optional[ActionBatch]:
        async with self._lock:
            batch_id = self._by_key.get(idempotency_key)
            return copy.deepcopy(self._batches[batch_id]) if batch_id else None

    async def save_batch(self, batch: ActionBatch) -> None:
        async with self._lock:
            stored = self._batches.get(batch.id)
            if stored is None:
                self._batches[batch.id] = copy.deepcopy(batch)
                self._by_key[batch.idempotency_key] = batch.id
                return
            stored.status = batch.status
            stored.summary = copy.deepcopy(batch.summary)
            stored.options = copy.deepcopy(batch.options)
            stored.updated_at = batch.updated_at
            stored.completed_at = batch.completed_at

    async def save_items(self, items: Sequence[ActionItem]) -> None:
        async with self._lock:
            for item in items:
                batch = self._batches.get(item.batch_id)
                if batch is None:
                    continue
                for index, stored in enumerate(batch.items):
                    if stored.id == item.id:
                        batch.items[index] = copy.deepcopy(item)
                        break
                else:
                    batch.items.append(copy.deepcopy(item))

    async def list_batches(self, owner_id: Optional[str] = None, limit: int = 50) -> List[ActionBatch]:
        async with self._lock:
            batches = [
                b for b in self._batches.values()
                if owner_id is None or b.owner_id == owner_id
            ]
            batches.sort(key=lambda b: b.created_at, reverse=True)
            result = []
            for batch in batches[:limit]:
                header = copy.deepcopy(batch)
                header.items = []
                result.append(header)
            return result


class MemoryCheckpointStore(CheckpointStore):
    """Checkpoints held in a dictionary with compare-and-set semantics."""

    def __init__(self):
        self._checkpoints: Dict[str, BatchCheckpoint] = {}
        self._lock = asyncio.Lock()

    async def get(self, batch_id: str) -> Optional[BatchCheckpoint]:
        async with self._lock:
            checkpoint = self._checkpoints.get(batch_id)
            return copy.deepcopy(checkpoint) if checkpoint else None

    async def save(self, checkpoint: BatchCheckpoint) -> bool:
        async with self._lock:
            if not checkpoint.supersedes(self._checkpoints.get(checkpoint.batch_id)):
                return False
            self._checkpoints[checkpoint.batch_id] = copy.deepcopy(checkpoint)
            return True

    async def clear(self, batch_id: str) -> None:
        async with self._lock:
            self._checkpoints.pop(batch_id, None)


class MemoryJobStore(JobStore):
    """Job queue held in a dictionary; claims scan for the best candidate under the lock."""

    ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    async def insert(self, job: Job) -> Job:
        async with self._lock:
            stored = copy.deepcopy(job)
            stored.sequence = next(self._sequence)
            self._jobs[stored.job_id] = stored
            return copy.deepcopy(stored)

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def update(self, job: Job, expected_worker: Optional[str] = None) -> bool:
        async with self._lock:
            stored = self._jobs.get(job.job_id)
            if stored is None:
                return False
            if expected_worker is not None and (
                stored.status != JobStatus.RUNNING or stored.locked_by != expected_worker
            ):
                return False
            updated = copy.deepcopy(job)
            updated.sequence = stored.sequence
            updated.cancel_requested = stored.cancel_requested or job.cancel_requested
            self._jobs[job.job_id] = updated
            return True

    async def claim_next(self, worker_id: str, now: datetime) -> Optional[Job]:
        async with self._lock:
            candidates = [j for j in self._jobs.values() if j.is_claimable(now)]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: j.claim_order())
            job.status = JobStatus.RUNNING
            job.attempt_count += 1
            job.locked_by = worker_id
            job.heartbeat_at = now
            job.started_at = job.started_at or now
            job.updated_at = now
            return copy.deepcopy(job)

    async def heartbeat(self, job_id: str, worker_id: str, now: datetime) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.RUNNING or job.locked_by != worker_id:
                return False
            job.heartbeat_at = now
            return True

    async def request_cancel(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            job.cancel_requested = True
            return copy.deepcopy(job)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Job]:
        async with self._lock:
            jobs = [
                j for j in self._jobs.values()
                if (status is None or j.status == status) and (owner_id is None or j.owner_id == owner_id)
            ]
            jobs.sort(key=lambda j: j.sequence, reverse=True)
            return [copy.deepcopy(j) for j in jobs[:limit]]

    async def find_active_for_batch(self, batch_id: str, job_type: JobType = JobType.EXECUTE_BATCH) -> Optional[Job]:
        async with self._lock:
            for job in self._jobs.values():
                if (job.job_type == job_type
                        and job.payload.get("batch_id") == batch_id
                        and job.status in self.ACTIVE_STATUSES):
                    return copy.deepcopy(job)
            return None

    async def find_stale_running(self, heartbeat_before: datetime) -> List[Job]:
        async with self._lock:
            return [
                copy.deepcopy(j) for j in self._jobs.values()
                if j.status == JobStatus.RUNNING
                and (j.heartbeat_at is None or j.heartbeat_at < heartbeat_before)
            ]

    async def count_by_status(self) -> Dict[str, int]:
        async with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts

    async def delete_finished_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [job_id for job_id, job in self._jobs.items() if self._expired(job, cutoff)]
            for job_id in expired:
                del self._jobs[job_id]
            return len(expired)

    @staticmethod
    def _expired(job: Job, cutoff: datetime) -> bool:
        if job.status == JobStatus.DEAD_LETTER:
            return job.created_at < cutoff
        if job.status in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED):
            return (job.completed_at or job.updated_at) < cutoff
        return False
