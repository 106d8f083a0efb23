"""
Progress reporter: read-only view of a job's live state for polling clients.
"""

from typing import Dict, Any, Optional

from ..models.job import Job, JobType
from ..storage.base import BatchRepository, JobStore
from ..utils.clock import isoformat


class ProgressReporter:
    """Combines a job's queue state with the summary of the batch it works on."""

    def __init__(self, jobs: JobStore, batches: BatchRepository):
        self.jobs = jobs
        self.batches = batches

    async def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get the live status of a job.

        Returns:
            Status dictionary, or None for an unknown job
        """
        job = await self.jobs.get(job_id)
        if job is None:
            return None

        batch_id = self._batch_id(job)
        summary = None
        batch_status = None
        if batch_id:
            batch = await self.batches.get_batch(batch_id)
            if batch is not None:
                batch.summary.recount(batch.items)
                summary = batch.summary.to_dict()
                batch_status = batch.status.value

        return {
            "job_id": job.job_id,
            "job_type": job.job_type.value,
            "status": job.status.value,
            "priority": job.priority.value,
            "attempt_count": job.attempt_count,
            "max_attempts": job.max_attempts,
            "cancel_requested": job.cancel_requested,
            "progress": job.progress.to_dict(),
            "batch_id": batch_id,
            "batch_status": batch_status,
            "summary": summary,
            "result": job.result,
            "error": {"code": job.error_code, "message": job.error_message} if job.error_message else None,
            "run_at": isoformat(job.run_at),
            "updated_at": isoformat(job.updated_at),
            "duration_seconds": job.get_duration()
        }

    @staticmethod
    def _batch_id(job: Job) -> Optional[str]:
        if job.job_type == JobType.REFRESH_CREDENTIAL:
            return job.payload.get("resume_batch_id")
        if job.job_type == JobType.ROLLBACK_BATCH and job.result:
            return job.result.get("rollback_batch_id") or job.payload.get("batch_id")
        return job.payload.get("batch_id")
