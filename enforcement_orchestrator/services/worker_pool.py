"""
WorkerPool service for Enforcement Orchestrator

Runs a fixed number of worker loops that claim jobs from the queue, execute
them through their handler and map the outcome onto a queue transition, plus
a reaper that requeues jobs whose worker stopped sending heartbeats.
"""

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Any, Sequence
from uuid import uuid4

import psutil

from ..core.exceptions import (
    CircuitOpenError,
    ExecutionSuspended,
    JobCancelledError,
    JobTimeoutError,
    ValidationError,
)
from ..models.job import Job, JobType
from ..utils.clock import Clock, utc_now
from ..utils.config import WorkerSettings
from ..utils.logger import get_logger, set_log_context, LoggerContext
from .job_handlers import JobContext, JobHandler
from .queue_manager import QueueManager


class WorkerPool:
    """
    Fixed-size pool of job workers.

    Each worker is an independent sequential loop: claim, execute, report,
    repeat. Workers share nothing but the queue and the services the
    handlers use.
    """

    def __init__(
        self,
        queue: QueueManager,
        handlers: Sequence[JobHandler],
        settings: Optional[WorkerSettings] = None,
        clock: Clock = utc_now,
        name: Optional[str] = None
    ):
        """
        Initialize WorkerPool.

        Args:
            queue: Queue the workers claim from
            handlers: One handler per job type
            settings: Concurrency, polling, heartbeat and timeout settings
            clock: Source of the current time
            name: Prefix for worker IDs
        """
        self.queue = queue
        self.handlers: Dict[JobType, JobHandler] = {h.job_type: h for h in handlers}
        self.settings = settings or WorkerSettings()
        self._clock = clock
        self.name = name or f"worker-{uuid4().hex[:8]}"

        self.active_jobs: Dict[str, str] = {}
        self.jobs_processed = 0
        self._tasks: List[asyncio.Task] = []
        self._reaper_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._process = psutil.Process()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="worker_pool")

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not self._shutdown_event.is_set()

    def worker_ids(self) -> List[str]:
        return [f"{self.name}-{i}" for i in range(self.settings.concurrency)]

    async def start(self):
        """Start the worker loops and the stale job reaper."""
        if self._tasks:
            return
        self._shutdown_event.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(worker_id))
            for worker_id in self.worker_ids()
        ]
        self._reaper_task = asyncio.create_task(self._reaper_loop())

        self.logger.info("WorkerPool started", extra={
            "pool": self.name,
            "concurrency": self.settings.concurrency
        })

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop the pool.

        Workers finish the job they hold; anything still running after
        ``timeout`` seconds is cancelled and will be reaped by heartbeat expiry.
        """
        self.logger.info("Stopping WorkerPool", extra={"active_jobs": len(self.active_jobs)})
        self._shutdown_event.set()

        if self._reaper_task:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self._tasks = []

        self.logger.info("WorkerPool stopped", extra={"jobs_processed": self.jobs_processed})

    async def process_next(self, worker_id: str) -> bool:
        """
        Claim and run one job.

        Returns:
            True if a job was processed, False if nothing was claimable
        """
        job = await self.queue.claim_next(worker_id)
        if job is None:
            return False
        await self._run_job(job, worker_id)
        return True

    async def run_until_idle(self, worker_id: Optional[str] = None, max_jobs: int = 1000) -> int:
        """Process claimable jobs one by one until the queue has none left."""
        worker_id = worker_id or self.worker_ids()[0]
        processed = 0
        while processed < max_jobs and await self.process_next(worker_id):
            processed += 1
        return processed

    def get_worker_status(self) -> Dict[str, Any]:
        return {
            "pool": self.name,
            "concurrency": self.settings.concurrency,
            "running": self.is_running,
            "active_jobs": dict(self.active_jobs),
            "jobs_processed": self.jobs_processed,
            "resources": self._resource_usage()
        }

    # Loops

    async def _worker_loop(self, worker_id: str):
        self.logger.info("Worker started", extra={"worker_id": worker_id})
        while not self._shutdown_event.is_set():
            try:
                processed = await self.process_next(worker_id)
            except Exception:
                self.logger.error("Worker loop error", extra={"worker_id": worker_id}, exc_info=True)
                processed = False

            if not processed:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.settings.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        self.logger.info("Worker stopped", extra={"worker_id": worker_id})

    async def _reaper_loop(self):
        while not self._shutdown_event.is_set():
            try:
                await self.queue.requeue_stale_jobs(self.settings.stale_after_seconds)
                if self.settings.job_retention_seconds:
                    await self.queue.cleanup_jobs(self.settings.job_retention_seconds)
            except Exception:
                self.logger.error("Stale job reaper error", exc_info=True)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.settings.reaper_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def _heartbeat_loop(self, job_id: str, worker_id: str):
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval_seconds)
            if not await self.queue.heartbeat(job_id, worker_id):
                self.logger.warning("Heartbeat rejected, lease lost", extra={
                    "job_id": job_id,
                    "worker_id": worker_id
                })
                return
            self.logger.debug("Heartbeat sent", extra={
                "job_id": job_id,
                "worker_id": worker_id,
                **self._resource_usage()
            })

    # Job execution

    async def _run_job(self, job: Job, worker_id: str):
        handler = self.handlers.get(job.job_type)
        if handler is None:
            await self.queue.fail(
                job,
                ValidationError("job_type", "no handler registered", job.job_type.value),
                worker_id,
                retryable=False
            )
            return

        timeout = self.settings.job_timeout_seconds
        context = JobContext(
            job=job,
            worker_id=worker_id,
            queue=self.queue,
            deadline=self._clock() + timedelta(seconds=timeout)
        )

        self.active_jobs[worker_id] = job.job_id
        heartbeat = asyncio.create_task(self._heartbeat_loop(job.job_id, worker_id))

        with LoggerContext(self.logger, job_id=job.job_id, worker_id=worker_id):
            self.logger.info("Running job", extra={
                "job_type": job.job_type.value,
                "attempt": job.attempt_count
            })
            try:
                result = await asyncio.wait_for(handler.handle(context), timeout=timeout)

            except ExecutionSuspended as e:
                await self.queue.reschedule(job, e.resume_after_seconds, e.reason, worker_id)

            except CircuitOpenError as e:
                await self.queue.reschedule(job, e.retry_after_seconds, f"circuit open for {e.provider}", worker_id)

            except JobCancelledError as e:
                await self.queue.mark_cancelled(job, worker_id, e.result)

            except asyncio.TimeoutError:
                self.logger.warning("Job timed out", extra={"timeout_seconds": timeout})
                await self.queue.fail(job, JobTimeoutError(job.job_id, timeout), worker_id, retryable=True)

            except Exception as e:
                self.logger.error("Job failed", extra={
                    "error": str(e),
                    "error_code": getattr(e, "error_code", None)
                }, exc_info=not hasattr(e, "error_code"))
                await self.queue.fail(job, e, worker_id)

            else:
                await self.queue.complete(job, result, worker_id)

            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
                self.active_jobs.pop(worker_id, None)
                self.jobs_processed += 1

    def _resource_usage(self) -> Dict[str, Any]:
        try:
            return {
                "cpu_percent": self._process.cpu_percent(),
                "memory_mb": self._process.memory_info().rss // 1024 // 1024
            }
        except psutil.Error:
            return {}
