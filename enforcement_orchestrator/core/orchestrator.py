"""
Main EnforcementOrchestrator class that coordinates all services

Provides the primary interface for enqueueing enforcement plans, polling job
status, rolling back batches and operating the queue and provider circuits.
"""

import asyncio
import random
import uuid
from typing import Dict, List, Optional, Any, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from ..models.job import Job, JobPriority, JobStatus, JobType
from ..models.plan import EnforcementPlan
from ..providers.base import ProviderAdapter, ProviderRegistry
from ..services.audit import AuditDispatcher, HttpAuditSink, LoggingAuditSink
from ..services.batch_planner import BatchPlanner
from ..services.executor import IdempotentActionExecutor
from ..services.fault_tolerance import RetryPolicy
from ..services.job_handlers import ExecuteBatchHandler, RefreshCredentialHandler, RollbackBatchHandler
from ..services.progress import ProgressReporter
from ..services.queue_manager import QueueManager
from ..services.rate_tracker import ProviderStateTracker
from ..services.rollback import RollbackEngine
from ..services.worker_pool import WorkerPool
from ..storage.base import BatchRepository, CheckpointStore, JobStore
from ..storage.files import FileCheckpointStore
from ..storage.memory import MemoryBatchRepository, MemoryCheckpointStore, MemoryJobStore
from ..storage.postgres import PostgresBatchRepository, PostgresCheckpointStore, PostgresJobStore
from ..utils.clock import Clock, Sleeper, utc_now, default_sleep
from ..utils.config import OrchestratorConfig
from ..utils.database import DatabaseManager
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import EnforcementMetrics
from .exceptions import (
    BatchNotFoundError,
    EnforcementError,
    JobNotFoundError,
    JobSubmissionError,
    OrchestratorError,
    QueueError,
    RollbackError,
    ValidationError,
)


class EnforcementOrchestrator:
    """
    Main orchestrator class that coordinates all services.

    Provides a unified interface for:
    - Plan submission and job status polling
    - Rollback of finished batches
    - Job cancellation and dead-letter handling
    - Provider health and circuit control
    - Queue statistics
    """

    def __init__(
        self,
        providers: Union[ProviderRegistry, Sequence[ProviderAdapter]],
        config: Optional[OrchestratorConfig] = None,
        batch_repository: Optional[BatchRepository] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        job_store: Optional[JobStore] = None,
        database_manager: Optional[DatabaseManager] = None,
        audit: Optional[AuditDispatcher] = None,
        metrics: Optional[EnforcementMetrics] = None,
        clock: Clock = utc_now,
        sleep: Sleeper = default_sleep,
        rng: Optional[random.Random] = None,
        start_workers: bool = True
    ):
        """
        Initialize the EnforcementOrchestrator.

        Args:
            providers: Provider adapters, or a registry of them
            config: Orchestrator configuration; defaults when omitted
            batch_repository: Batch storage (in-memory when omitted)
            checkpoint_store: Checkpoint storage (in-memory when omitted)
            job_store: Job queue storage (in-memory when omitted)
            database_manager: Pool to open on start and close on stop
            audit: Audit dispatcher (logging sink when omitted)
            metrics: Metrics registry wrapper
            clock: Source of the current time
            sleep: Awaitable used for rate-limit and retry waits
            rng: Random source for jitter
            start_workers: Whether start() launches the worker pool
        """
        self.config = config or OrchestratorConfig()
        self.providers = providers if isinstance(providers, ProviderRegistry) else ProviderRegistry(providers)
        self.db = database_manager
        self.metrics = metrics or EnforcementMetrics()
        self.audit = audit or AuditDispatcher(LoggingAuditSink())
        self.start_workers = start_workers
        rng = rng or random.Random()

        self.batch_repository = batch_repository or MemoryBatchRepository()
        self.checkpoint_store = checkpoint_store or MemoryCheckpointStore()
        self.job_store = job_store or MemoryJobStore()

        settings_lookup = self.config.provider_settings
        self.tracker = ProviderStateTracker(settings_lookup, clock=clock, rng=rng, metrics=self.metrics)
        self.planner = BatchPlanner(settings_lookup, clock=clock)
        self.executor = IdempotentActionExecutor(
            self.batch_repository,
            self.checkpoint_store,
            self.tracker,
            self.planner,
            self.providers,
            settings_lookup,
            audit=self.audit,
            metrics=self.metrics,
            clock=clock,
            sleep=sleep,
            rng=rng
        )
        self.rollback_engine = RollbackEngine(self.batch_repository, self.executor, clock=clock)
        self.queue_manager = QueueManager(
            self.job_store,
            retry_policy=RetryPolicy.from_settings(self.config.job_retry),
            metrics=self.metrics,
            clock=clock,
            rng=rng
        )
        self.queue_manager.add_failure_listener(self._settle_batch)
        self.worker_pool = WorkerPool(
            self.queue_manager,
            [
                ExecuteBatchHandler(self.executor, self.queue_manager),
                RollbackBatchHandler(self.rollback_engine),
                RefreshCredentialHandler(self.providers, self.queue_manager),
            ],
            settings=self.config.workers,
            clock=clock
        )
        self.progress_reporter = ProgressReporter(self.job_store, self.batch_repository)

        # State tracking
        self._is_running = False
        self._shutdown_event = asyncio.Event()

        # Logger
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="orchestrator")

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        providers: Union[ProviderRegistry, Sequence[ProviderAdapter]],
        **kwargs
    ) -> "EnforcementOrchestrator":
        """
        Build an orchestrator whose storage and audit sink follow the configuration.

        Postgres storage is used when a database URL is configured, in-memory
        storage otherwise. A checkpoint directory selects the file checkpoint store.
        """
        if config.database_url:
            db = DatabaseManager(config.database_url, pool_size=config.database_pool_size)
            kwargs.setdefault("database_manager", db)
            kwargs.setdefault("batch_repository", PostgresBatchRepository(db))
            kwargs.setdefault("checkpoint_store", PostgresCheckpointStore(db))
            kwargs.setdefault("job_store", PostgresJobStore(db))
        elif config.checkpoint_dir:
            kwargs.setdefault("checkpoint_store", FileCheckpointStore(config.checkpoint_dir))

        if config.audit_webhook_url and "audit" not in kwargs:
            kwargs["audit"] = AuditDispatcher(HttpAuditSink(config.audit_webhook_url))

        return cls(providers, config=config, **kwargs)

    async def start(self):
        """Start the orchestrator and all services."""
        self.logger.info("Starting EnforcementOrchestrator", extra={
            "providers": self.providers.names(),
            "persistent": self.db is not None,
            "workers": self.config.workers.concurrency if self.start_workers else 0
        })

        try:
            if self.db:
                await self.db.initialize()
                await self.db.apply_schema()

            await self.queue_manager.start()
            if self.start_workers:
                await self.worker_pool.start()

            self._is_running = True
            self._shutdown_event.clear()
            self.logger.info("EnforcementOrchestrator started successfully")

        except Exception as e:
            self.logger.error("Failed to start EnforcementOrchestrator", exc_info=True)
            await self.stop()
            raise OrchestratorError(f"Failed to start orchestrator: {str(e)}", component="orchestrator")

    async def stop(self):
        """Stop the orchestrator and all services."""
        self.logger.info("Stopping EnforcementOrchestrator")
        self._shutdown_event.set()

        steps = [
            ("worker_pool", lambda: self.worker_pool.stop(timeout=self.config.workers.job_timeout_seconds)),
            ("queue_manager", self.queue_manager.stop),
            ("audit", self.audit.close),
            ("providers", self.providers.close_all),
        ]
        if self.db:
            steps.append(("database", self.db.close))

        for name, step in steps:
            try:
                await step()
            except Exception:
                self.logger.error(f"Error stopping {name}", exc_info=True)

        self._is_running = False
        self.logger.info("EnforcementOrchestrator stopped")

    # Job Management Interface

    async def enqueue_batch(
        self,
        plan: Union[EnforcementPlan, Dict[str, Any]],
        priority: JobPriority = JobPriority.NORMAL
    ) -> str:
        """
        Submit an enforcement plan for background execution.

        The batch is created on first submission of an idempotency key. If a
        job for the batch is already queued or running, its ID is returned.

        Args:
            plan: Validated plan, or its JSON form
            priority: Queue priority of the execute job

        Returns:
            Job ID

        Raises:
            ValidationError: The plan is malformed
            JobSubmissionError: The plan could not be stored or enqueued
        """
        self._ensure_running()
        plan = self._validate_plan(plan)

        try:
            batch = await self.batch_repository.get_batch_by_key(plan.idempotency_key)
            if batch is None:
                batch, created = await self.batch_repository.create_batch(self.planner.build_batch(plan))
                if created:
                    self.logger.info("Batch created", extra={
                        "batch_id": batch.id,
                        "owner_id": batch.owner_id,
                        "provider": batch.provider,
                        "items": len(batch.items),
                        "dry_run": batch.dry_run
                    })

            active = await self.queue_manager.find_active_for_batch(batch.id)
            if active is not None:
                self.logger.info("Batch already has an active job", extra={
                    "batch_id": batch.id,
                    "job_id": active.job_id
                })
                return active.job_id

            return await self.queue_manager.enqueue(Job(
                job_id=str(uuid.uuid4()),
                job_type=JobType.EXECUTE_BATCH,
                payload={"batch_id": batch.id},
                priority=priority,
                owner_id=batch.owner_id,
                provider=batch.provider,
                max_attempts=self.config.job_retry.max_attempts
            ))

        except EnforcementError:
            raise
        except Exception as e:
            self.logger.error("Failed to enqueue plan", exc_info=True)
            raise JobSubmissionError(str(e), plan.idempotency_key)

    async def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get detailed status of a job.

        Args:
            job_id: ID of job to query

        Returns:
            Job status dictionary or None if not found
        """
        return await self.progress_reporter.get(job_id)

    async def rollback(
        self,
        batch_id: str,
        item_ids: Optional[List[str]] = None,
        reason: Optional[str] = None,
        priority: JobPriority = JobPriority.HIGH
    ) -> str:
        """
        Enqueue a rollback of a finished batch, or of some of its items.

        Returns:
            Rollback job ID

        Raises:
            BatchNotFoundError: Unknown batch
            RollbackError: The batch is still running
        """
        self._ensure_running()
        batch = await self.batch_repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        if not batch.is_terminal:
            raise RollbackError(batch_id, f"batch is {batch.status.value}; only finished batches can be rolled back")

        job_id = await self.queue_manager.enqueue(Job(
            job_id=str(uuid.uuid4()),
            job_type=JobType.ROLLBACK_BATCH,
            payload={"batch_id": batch_id, "item_ids": item_ids, "reason": reason},
            priority=priority,
            owner_id=batch.owner_id,
            provider=batch.provider,
            max_attempts=self.config.job_retry.max_attempts
        ))
        self.logger.info("Rollback enqueued", extra={
            "batch_id": batch_id,
            "job_id": job_id,
            "items": len(item_ids) if item_ids is not None else "all",
            "reason": reason
        })
        return job_id

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a queued job, or ask a running job to stop after its current sub-batch.

        Returns:
            True if the job was cancelled or flagged
        """
        try:
            return await self.queue_manager.request_cancel(job_id)
        except JobNotFoundError:
            self.logger.warning("Cannot cancel unknown job", extra={"job_id": job_id})
            return False

    async def get_batch(self, batch_id: str, include_items: bool = True) -> Optional[Dict[str, Any]]:
        batch = await self.batch_repository.get_batch(batch_id)
        return batch.to_dict(include_items=include_items) if batch else None

    async def list_jobs(self, status_filter: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        status = JobStatus(status_filter) if status_filter else None
        jobs = await self.queue_manager.list_jobs(status=status, limit=limit)
        return [job.to_dict() for job in jobs]

    # Dead letter interface

    async def list_dead_letter_jobs(self, limit: int = 100) -> List[Dict[str, Any]]:
        jobs = await self.queue_manager.list_dead_letter(limit)
        return [job.to_dict() for job in jobs]

    async def requeue_dead_letter_job(self, job_id: str) -> bool:
        """
        Operator action: give a dead-letter job a fresh attempt budget.

        Items its batch never applied are reopened so the requeued job runs them.
        """
        try:
            job = await self.queue_manager.get_status(job_id)
            if job.status == JobStatus.DEAD_LETTER and job.job_type == JobType.EXECUTE_BATCH:
                await self.executor.reopen(job.payload.get("batch_id", ""))
            await self.queue_manager.requeue_dead_letter(job_id)
            return True
        except (JobNotFoundError, QueueError) as e:
            self.logger.warning("Dead-letter requeue refused", extra={
                "job_id": job_id,
                "error": e.message
            })
            return False

    async def cleanup_jobs(self, older_than_seconds: Optional[float] = None) -> int:
        """
        Delete finished jobs past the retention window.

        Args:
            older_than_seconds: Retention window; defaults to workers.job_retention_seconds

        Returns:
            Number of jobs deleted
        """
        retention = older_than_seconds or self.config.workers.job_retention_seconds
        if not retention:
            return 0
        return await self.queue_manager.cleanup_jobs(retention)

    # Provider interface

    def get_provider_health(self) -> Dict[str, Dict[str, Any]]:
        for name in self.providers.names():
            self.tracker.get_circuit_state(name)
        return self.tracker.get_provider_health()

    async def reset_circuit(self, provider: str) -> bool:
        return await self.tracker.reset_circuit(provider.lower())

    # Queue Management Interface

    async def get_queue_statistics(self) -> Dict[str, Any]:
        stats = await self.queue_manager.get_queue_statistics()
        stats["workers"] = self.worker_pool.get_worker_status()
        return stats

    async def pause_queue(self) -> bool:
        await self.queue_manager.pause_processing()
        return True

    async def resume_queue(self) -> bool:
        await self.queue_manager.resume_processing()
        return True

    async def process_pending_jobs(self, max_jobs: int = 1000) -> int:
        """Run claimable jobs inline until none is left; for tests and one-shot runs."""
        return await self.worker_pool.run_until_idle(max_jobs=max_jobs)

    # Utility Methods

    def is_running(self) -> bool:
        """Check if orchestrator is running."""
        return self._is_running

    async def wait_for_shutdown(self):
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()

    async def health_check(self) -> bool:
        if not self._is_running:
            return False
        if self.db and not await self.db.is_healthy():
            return False
        return True

    async def _settle_batch(self, job: Job):
        """Close out the batch of a job that failed for good."""
        batch_id = job.payload.get("batch_id")
        if not batch_id:
            return
        if job.job_type == JobType.ROLLBACK_BATCH:
            target = await self.rollback_engine.find_rollback_batch(batch_id, job.payload.get("item_ids"))
            if target is None:
                return
            batch_id = target.id
        elif job.job_type != JobType.EXECUTE_BATCH:
            return

        await self.executor.abandon(
            batch_id,
            reason=job.error_message or job.status.value,
            cancelled=job.status == JobStatus.CANCELLED
        )

    def _ensure_running(self):
        if not self._is_running:
            raise OrchestratorError("Orchestrator is not running", component="orchestrator")

    @staticmethod
    def _validate_plan(plan: Union[EnforcementPlan, Dict[str, Any]]) -> EnforcementPlan:
        if isinstance(plan, EnforcementPlan):
            return plan
        try:
            return EnforcementPlan.model_validate(plan)
        except PydanticValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            field = ".".join(str(p) for p in first.get("loc", ())) or "plan"
            raise ValidationError(field, first.get("msg", str(e)))
