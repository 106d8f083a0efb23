"""
QueueManager service for Enforcement Orchestrator

Manages the durable job queue: enqueueing, priority claims, progress and
heartbeats, and the retry / dead-letter state machine.
"""

import dataclasses
import random
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Any

from ..core.exceptions import JobNotFoundError, QueueError
from ..models.job import Job, JobProgress, JobStatus, JobType
from ..storage.base import JobStore
from ..utils.clock import Clock, utc_now
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import EnforcementMetrics
from .fault_tolerance import RetryAction, RetryPolicy

FailureListener = Callable[[Job], Awaitable[None]]


class QueueManager:
    """
    Manages job queue and scheduling operations.

    Provides capabilities for:
    - Priority-based job queuing, FIFO within a priority
    - Atomic claims with worker leases and heartbeats
    - Retry with backoff, dead-lettering and operator requeue
    - Queue statistics and monitoring
    """

    def __init__(
        self,
        store: JobStore,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[EnforcementMetrics] = None,
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize QueueManager.

        Args:
            store: Durable job store
            retry_policy: Backoff applied to failed jobs
            metrics: Optional metrics sink
            clock: Source of the current time
            rng: Random source for backoff jitter
        """
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=5, initial_delay=30.0, max_delay=900.0)
        self.metrics = metrics
        self._clock = clock
        self._rng = rng or random.Random()
        self._is_paused = False
        self._failure_listeners: List[FailureListener] = []

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="queue_manager")

    def add_failure_listener(self, listener: FailureListener):
        """
        Register a coroutine awaited with the job whenever a failure path
        leaves it failed, dead-lettered or cancelled.
        """
        self._failure_listeners.append(listener)

    async def start(self):
        """Start the queue manager."""
        self.logger.info("Starting QueueManager")

    async def stop(self):
        """Stop the queue manager."""
        self.logger.info("Stopping QueueManager")

    # Producer side

    async def enqueue(self, job: Job, delay_seconds: float = 0.0) -> str:
        """
        Add a job to the queue.

        Args:
            job: Job to enqueue
            delay_seconds: Earliest claim time, relative to now

        Returns:
            The job ID
        """
        now = self._clock()
        job.status = JobStatus.QUEUED
        job.run_at = now + timedelta(seconds=max(0.0, delay_seconds))
        job.created_at = now
        job.updated_at = now
        stored = await self.store.insert(job)

        self.logger.info("Job enqueued", extra={
            "job_id": stored.job_id,
            "job_type": stored.job_type.value,
            "priority": stored.priority.value,
            "run_at": stored.run_at.isoformat()
        })
        return stored.job_id

    async def get_status(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def find_active_for_batch(self, batch_id: str, job_type: JobType = JobType.EXECUTE_BATCH) -> Optional[Job]:
        return await self.store.find_active_for_batch(batch_id, job_type)

    async def request_cancel(self, job_id: str) -> bool:
        """
        Request cancellation of a job.

        Queued jobs are cancelled immediately. Running jobs are flagged and stop
        at the worker's next check between sub-batches.

        Returns:
            True if the job was cancelled or flagged, False if already terminal
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not job.can_be_cancelled():
            return False

        # The flag alone keeps a queued job from being claimed
        job = await self.store.request_cancel(job_id)
        if job.status == JobStatus.QUEUED:
            now = self._clock()
            job.status = JobStatus.CANCELLED
            job.completed_at = now
            job.updated_at = now
            await self.store.update(job)
            self._record_terminal(job)

        self.logger.info("Job cancel requested", extra={
            "job_id": job_id,
            "status": job.status.value
        })
        return True

    # Worker side

    async def claim_next(self, worker_id: str) -> Optional[Job]:
        """
        Claim the next claimable job for ``worker_id``.

        Returns:
            The claimed job in RUNNING state, or None if nothing is claimable
        """
        if self._is_paused:
            return None

        job = await self.store.claim_next(worker_id, self._clock())
        if job is not None:
            self.logger.info("Job claimed", extra={
                "job_id": job.job_id,
                "worker_id": worker_id,
                "attempt": job.attempt_count
            })
        return job

    async def heartbeat(self, job_id: str, worker_id: str) -> bool:
        return await self.store.heartbeat(job_id, worker_id, self._clock())

    async def is_cancel_requested(self, job_id: str) -> bool:
        job = await self.store.get(job_id)
        return job is None or job.cancel_requested

    async def report_progress(self, job_id: str, progress: JobProgress, worker_id: Optional[str] = None) -> bool:
        """Store a progress snapshot for a running job."""
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        job.progress = progress
        job.updated_at = self._clock()
        return await self.store.update(job, expected_worker=worker_id)

    async def complete(self, job: Job, result: Optional[Dict[str, Any]], worker_id: str) -> bool:
        job = await self._latest(job)
        now = self._clock()
        job.status = JobStatus.SUCCEEDED
        job.result = result
        job.error_message = None
        job.error_code = None
        job.locked_by = None
        job.completed_at = now
        job.updated_at = now
        job.progress.percentage = 100.0
        job.progress.current_step = "succeeded"

        applied = await self.store.update(job, expected_worker=worker_id)
        if not applied:
            self._lease_lost(job, worker_id)
            return False

        self._record_terminal(job)
        self.logger.info("Job succeeded", extra={
            "job_id": job.job_id,
            "attempt": job.attempt_count,
            "duration_seconds": job.get_duration()
        })
        return True

    async def fail(self, job: Job, error: BaseException, worker_id: str, retryable: Optional[bool] = None) -> Job:
        """
        Record a failed attempt and move the job along the retry state machine.

        Args:
            job: The running job
            error: What went wrong
            worker_id: Worker holding the lease
            retryable: Overrides the error's own ``retryable`` attribute

        Returns:
            The job in its new state (QUEUED, DEAD_LETTER, FAILED or CANCELLED)
        """
        job = await self._latest(job)
        if retryable is None:
            retryable = getattr(error, "retryable", True)
        job.error_message = str(error)
        job.error_code = getattr(error, "error_code", None) or type(error).__name__
        await self._transition_after_failure(job, retryable)

        if not await self.store.update(job, expected_worker=worker_id):
            self._lease_lost(job, worker_id)
            return job

        if job.status == JobStatus.QUEUED:
            self.logger.warning("Job failed, retry scheduled", extra={
                "job_id": job.job_id,
                "attempt": job.attempt_count,
                "max_attempts": job.max_attempts,
                "run_at": job.run_at.isoformat(),
                "error_code": job.error_code
            })
        else:
            self._record_terminal(job)
            self.logger.error("Job failed permanently", extra={
                "job_id": job.job_id,
                "status": job.status.value,
                "attempt": job.attempt_count,
                "error_code": job.error_code,
                "error": job.error_message
            })
            await self._notify_failed(job)
        return job

    async def reschedule(self, job: Job, delay_seconds: float, reason: str, worker_id: str) -> bool:
        """
        Return a job to the queue without spending an attempt.

        Used when the provider is rate limited or its circuit is open.
        """
        job = await self._latest(job)
        if job.cancel_requested:
            return await self.mark_cancelled(job, worker_id)

        now = self._clock()
        job.status = JobStatus.QUEUED
        job.attempt_count = max(0, job.attempt_count - 1)
        job.run_at = now + timedelta(seconds=max(0.0, delay_seconds))
        job.locked_by = None
        job.heartbeat_at = None
        job.progress.current_step = f"waiting: {reason}"
        job.updated_at = now

        applied = await self.store.update(job, expected_worker=worker_id)
        if not applied:
            self._lease_lost(job, worker_id)
            return False

        if self.metrics:
            self.metrics.record_job(job.job_type.value, "rescheduled")
        self.logger.info("Job rescheduled", extra={
            "job_id": job.job_id,
            "delay_seconds": round(delay_seconds, 3),
            "reason": reason
        })
        return True

    async def mark_cancelled(self, job: Job, worker_id: str, result: Optional[Dict[str, Any]] = None) -> bool:
        job = await self._latest(job)
        now = self._clock()
        job.status = JobStatus.CANCELLED
        job.cancel_requested = True
        job.locked_by = None
        job.completed_at = now
        job.updated_at = now
        if result:
            job.result = result

        applied = await self.store.update(job, expected_worker=worker_id)
        if applied:
            self._record_terminal(job)
            self.logger.info("Job cancelled", extra={"job_id": job.job_id})
        else:
            self._lease_lost(job, worker_id)
        return applied

    # Maintenance

    async def requeue_stale_jobs(self, stale_after_seconds: float) -> List[str]:
        """
        Treat running jobs with an expired heartbeat as failed attempts.

        Returns:
            IDs of the jobs that were reaped
        """
        cutoff = self._clock() - timedelta(seconds=stale_after_seconds)
        reaped = []
        for job in await self.store.find_stale_running(cutoff):
            worker_id = job.locked_by
            job.error_message = f"worker {worker_id} stopped sending heartbeats"
            job.error_code = "HEARTBEAT_TIMEOUT"
            await self._transition_after_failure(job, retryable=True)
            if await self.store.update(job, expected_worker=worker_id):
                reaped.append(job.job_id)
                self.logger.warning("Stale job reaped", extra={
                    "job_id": job.job_id,
                    "worker_id": worker_id,
                    "status": job.status.value
                })
                if job.is_terminal:
                    self._record_terminal(job)
                    await self._notify_failed(job)
        return reaped

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Job]:
        return await self.store.list_jobs(status=status, owner_id=owner_id, limit=limit)

    async def list_dead_letter(self, limit: int = 100) -> List[Job]:
        return await self.store.list_jobs(status=JobStatus.DEAD_LETTER, limit=limit)

    async def requeue_dead_letter(self, job_id: str) -> Job:
        """
        Operator action: put a dead-letter job back on the queue with a fresh attempt budget.

        Raises:
            JobNotFoundError: Unknown job
            QueueError: The job is not in the dead-letter state
        """
        job = await self.get_status(job_id)
        if job.status != JobStatus.DEAD_LETTER:
            raise QueueError("requeue_dead_letter", f"job {job_id} is {job.status.value}, not dead_letter")

        now = self._clock()
        job.status = JobStatus.QUEUED
        job.attempt_count = 0
        job.run_at = now
        job.locked_by = None
        job.heartbeat_at = None
        job.completed_at = None
        job.error_message = None
        job.error_code = None
        job.updated_at = now
        await self.store.update(job)

        self.logger.info("Dead-letter job requeued", extra={"job_id": job_id})
        return job

    async def cleanup_jobs(self, older_than_seconds: float) -> int:
        """
        Delete finished jobs past the retention window.

        Succeeded, failed and cancelled jobs age from when they finished;
        dead-letter jobs age from when they were created.

        Returns:
            Number of jobs deleted
        """
        cutoff = self._clock() - timedelta(seconds=older_than_seconds)
        deleted = await self.store.delete_finished_before(cutoff)
        if deleted:
            self.logger.info("Finished jobs cleaned up", extra={
                "deleted": deleted,
                "cutoff": cutoff.isoformat()
            })
        return deleted

    async def get_queue_statistics(self) -> Dict[str, Any]:
        """Get queue statistics."""
        counts = await self.store.count_by_status()
        return {
            "queue_size": counts.get(JobStatus.QUEUED.value, 0),
            "processing_jobs": counts.get(JobStatus.RUNNING.value, 0),
            "dead_letter_jobs": counts.get(JobStatus.DEAD_LETTER.value, 0),
            "by_status": counts,
            "is_paused": self._is_paused
        }

    async def pause_processing(self):
        """Pause queue processing."""
        self._is_paused = True
        self.logger.info("Queue processing paused")

    async def resume_processing(self):
        """Resume queue processing."""
        self._is_paused = False
        self.logger.info("Queue processing resumed")

    # Internals

    async def _latest(self, job: Job) -> Job:
        """Stored copy of ``job``, carrying progress and the cancel flag written since the claim."""
        stored = await self.store.get(job.job_id)
        return stored if stored is not None else job

    async def _transition_after_failure(self, job: Job, retryable: bool):
        now = self._clock()
        job.locked_by = None
        job.heartbeat_at = None
        job.updated_at = now

        if job.cancel_requested:
            job.status = JobStatus.CANCELLED
            job.completed_at = now
            return

        policy = dataclasses.replace(self.retry_policy, max_attempts=job.max_attempts)
        decision = policy.decide(job.attempt_count, retryable=retryable, rng=self._rng)

        if decision.action == RetryAction.RETRY:
            job.status = JobStatus.QUEUED
            job.run_at = now + timedelta(seconds=decision.delay_seconds)
        elif decision.action == RetryAction.EXHAUSTED:
            job.status = JobStatus.DEAD_LETTER
            job.completed_at = now
        else:
            job.status = JobStatus.FAILED
            job.completed_at = now

    async def _notify_failed(self, job: Job):
        for listener in self._failure_listeners:
            try:
                await listener(job)
            except Exception:
                self.logger.error("Job failure listener error", extra={"job_id": job.job_id}, exc_info=True)

    def _record_terminal(self, job: Job):
        if self.metrics:
            self.metrics.record_job(job.job_type.value, job.status.value, job.get_duration())

    def _lease_lost(self, job: Job, worker_id: str):
        self.logger.warning("Job lease lost, update dropped", extra={
            "job_id": job.job_id,
            "worker_id": worker_id,
            "status": job.status.value
        })
