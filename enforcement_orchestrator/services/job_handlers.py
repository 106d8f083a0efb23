"""
Job handlers.

One handler per job type. A handler receives a JobContext for the claimed
job, does the work and returns a JSON-serializable result; exceptions are
mapped onto queue transitions by the worker pool.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, List, Optional

from ..core.exceptions import CredentialError, JobCancelledError, ValidationError
from ..models.action import BatchStatus
from ..models.job import Job, JobPriority, JobProgress, JobType
from ..providers.base import ProviderRegistry
from ..utils.logger import get_logger, set_log_context
from .executor import IdempotentActionExecutor
from .queue_manager import QueueManager
from .rollback import RollbackEngine


@dataclass
class JobContext:
    """What a handler may know about and do to the job it is running."""
    job: Job
    worker_id: str
    queue: QueueManager
    deadline: Optional[datetime] = None

    async def report_progress(self, progress: JobProgress):
        await self.queue.report_progress(self.job.job_id, progress, worker_id=self.worker_id)

    async def is_cancel_requested(self) -> bool:
        return await self.queue.is_cancel_requested(self.job.job_id)


def _require(job: Job, key: str) -> Any:
    value = job.payload.get(key)
    if not value:
        raise ValidationError(f"payload.{key}", "is required", value)
    return value


class JobHandler(ABC):
    """Base class for job handlers."""

    job_type: JobType

    def __init__(self):
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="job_handler")

    @abstractmethod
    async def handle(self, context: JobContext) -> Dict[str, Any]:
        """Run the job and return its result."""

    async def _schedule_refresh(self, context: JobContext, error: CredentialError) -> Optional[str]:
        """
        Enqueue a credential refresh that resumes this job's work once it succeeds.

        The resume job gets the same type and payload as the interrupted job.
        Nothing is scheduled when the credential cannot be refreshed.

        Returns:
            The refresh job ID, also recorded on the error as ``refresh_job_id``
        """
        if not error.refreshable:
            return None

        job = context.job
        owner_id = error.owner_id or job.owner_id
        refresh_job_id = await context.queue.enqueue(Job(
            job_id=str(uuid.uuid4()),
            job_type=JobType.REFRESH_CREDENTIAL,
            payload={
                "owner_id": owner_id,
                "provider": error.provider,
                "resume_batch_id": job.payload.get("batch_id"),
                "resume_job_type": job.job_type.value,
                "resume_payload": dict(job.payload),
                "resume_priority": job.priority.value
            },
            priority=JobPriority.HIGH,
            owner_id=owner_id,
            provider=error.provider
        ))
        error.details["refresh_job_id"] = refresh_job_id

        self.logger.info("Credential refresh scheduled", extra={
            "job_id": job.job_id,
            "refresh_job_id": refresh_job_id,
            "batch_id": job.payload.get("batch_id")
        })
        return refresh_job_id


class ExecuteBatchHandler(JobHandler):
    """Runs an action batch through the executor."""

    job_type = JobType.EXECUTE_BATCH

    def __init__(self, executor: IdempotentActionExecutor, queue: QueueManager):
        super().__init__()
        self.executor = executor
        self.queue = queue

    async def handle(self, context: JobContext) -> Dict[str, Any]:
        job = context.job
        batch_id = _require(job, "batch_id")

        try:
            result = await self.executor.execute(
                batch_id,
                deadline=context.deadline,
                is_cancel_requested=context.is_cancel_requested,
                report_progress=context.report_progress
            )
        except CredentialError as e:
            await self._schedule_refresh(context, e)
            raise

        if result.cancelled:
            raise JobCancelledError(job.job_id, result.to_dict())
        return result.to_dict()


class RollbackBatchHandler(JobHandler):
    """Rolls back a finished batch, or a subset of its items."""

    job_type = JobType.ROLLBACK_BATCH

    def __init__(self, rollback_engine: RollbackEngine):
        super().__init__()
        self.rollback_engine = rollback_engine

    async def handle(self, context: JobContext) -> Dict[str, Any]:
        job = context.job
        batch_id = _require(job, "batch_id")
        item_ids: Optional[List[str]] = job.payload.get("item_ids")

        try:
            result = await self.rollback_engine.rollback(
                batch_id,
                item_ids=item_ids,
                reason=job.payload.get("reason"),
                deadline=context.deadline,
                is_cancel_requested=context.is_cancel_requested,
                report_progress=context.report_progress
            )
        except CredentialError as e:
            await self._schedule_refresh(context, e)
            raise

        if result.status == BatchStatus.CANCELLED:
            raise JobCancelledError(job.job_id, result.to_dict())
        return result.to_dict()


class RefreshCredentialHandler(JobHandler):
    """Refreshes an owner's provider credential and resumes the interrupted job."""

    job_type = JobType.REFRESH_CREDENTIAL

    def __init__(self, providers: ProviderRegistry, queue: QueueManager):
        super().__init__()
        self.providers = providers
        self.queue = queue

    async def handle(self, context: JobContext) -> Dict[str, Any]:
        job = context.job
        owner_id = _require(job, "owner_id")
        provider = _require(job, "provider")

        adapter = self.providers.get(provider)
        if not await adapter.refresh_credential(owner_id):
            raise CredentialError(
                provider,
                "no refresh path; the owner must re-authorize",
                owner_id=owner_id,
                refreshable=False,
                error_code="REAUTHORIZATION_REQUIRED"
            )

        result: Dict[str, Any] = {"owner_id": owner_id, "provider": provider, "refreshed": True}

        batch_id = job.payload.get("resume_batch_id")
        if batch_id:
            resume_type = JobType(job.payload.get("resume_job_type", JobType.EXECUTE_BATCH.value))
            active = await self.queue.find_active_for_batch(batch_id, resume_type)
            if active is not None:
                result["resumed_job_id"] = active.job_id
            else:
                result["resumed_job_id"] = await self.queue.enqueue(Job(
                    job_id=str(uuid.uuid4()),
                    job_type=resume_type,
                    payload=job.payload.get("resume_payload") or {"batch_id": batch_id},
                    priority=JobPriority(job.payload.get("resume_priority", JobPriority.NORMAL.value)),
                    owner_id=owner_id,
                    provider=provider
                ))

        self.logger.info("Credential refreshed", extra={
            "job_id": job.job_id,
            "provider": provider,
            "resumed_job_id": result.get("resumed_job_id")
        })
        return result
