"""
Job-related data models for Enforcement Orchestrator

Defines the asynchronous units of work pulled by the worker pool: job types,
priorities, statuses with their allowed transitions, and progress snapshots.
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from ..utils.clock import utc_now, parse_timestamp, isoformat


class JobStatus(Enum):
    """Job execution status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"
    CANCELLED = "cancelled"


class JobType(Enum):
    """Job type enumeration."""
    EXECUTE_BATCH = "execute_batch"
    ROLLBACK_BATCH = "rollback_batch"
    REFRESH_CREDENTIAL = "refresh_credential"


class JobPriority(Enum):
    """Job priority enumeration."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank; higher ranks are claimed first."""
        return PRIORITY_RANKS[self]


PRIORITY_RANKS: Dict[JobPriority, int] = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.CRITICAL: 3,
}


@dataclass
class JobProgress:
    """Live progress snapshot reported by the worker running a job."""
    current_step: str = "queued"
    total_steps: int = 0
    completed_steps: int = 0
    percentage: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "percentage": round(self.percentage, 2),
            "details": self.details
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobProgress":
        if not data:
            return cls()
        return cls(
            current_step=data.get("current_step", "queued"),
            total_steps=int(data.get("total_steps", 0)),
            completed_steps=int(data.get("completed_steps", 0)),
            percentage=float(data.get("percentage", 0.0)),
            details=dict(data.get("details") or {})
        )


@dataclass
class Job:
    """Core job data model."""

    # Primary identification
    job_id: str
    job_type: JobType
    payload: Dict[str, Any] = field(default_factory=dict)

    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.QUEUED

    # Ownership, used for listing and credential refresh
    owner_id: Optional[str] = None
    provider: Optional[str] = None

    # Retry accounting
    attempt_count: int = 0
    max_attempts: int = 5

    # Scheduling and leasing
    sequence: int = 0
    run_at: datetime = field(default_factory=utc_now)
    locked_by: Optional[str] = None
    heartbeat_at: Optional[datetime] = None
    cancel_requested: bool = False

    progress: JobProgress = field(default_factory=JobProgress)
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def can_be_cancelled(self) -> bool:
        """Check if job can be cancelled."""
        return self.status in (JobStatus.QUEUED, JobStatus.RUNNING)

    def is_claimable(self, now: datetime) -> bool:
        return self.status == JobStatus.QUEUED and self.run_at <= now and not self.cancel_requested

    def claim_order(self):
        """Sort key: priority first, then FIFO within a tier."""
        return (-self.priority.rank, self.sequence, self.created_at)

    def get_duration(self) -> Optional[float]:
        """Get job duration in seconds if completed."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for serialization."""
        return {
            "job_id": self.job_id,
            "job_type": self.job_type.value,
            "payload": self.payload,
            "priority": self.priority.value,
            "status": self.status.value,
            "owner_id": self.owner_id,
            "provider": self.provider,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "sequence": self.sequence,
            "run_at": isoformat(self.run_at),
            "locked_by": self.locked_by,
            "heartbeat_at": isoformat(self.heartbeat_at),
            "cancel_requested": self.cancel_requested,
            "progress": self.progress.to_dict(),
            "result": self.result,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create job from dictionary."""
        data = dict(data)

        # Parse datetime fields
        for field_name in ["run_at", "created_at", "updated_at", "heartbeat_at", "started_at", "completed_at"]:
            value = data.get(field_name)
            if value:
                data[field_name] = parse_timestamp(value)
            elif field_name in ("run_at", "created_at", "updated_at"):
                data.pop(field_name, None)
            else:
                data[field_name] = None

        # Parse enum fields
        data["job_type"] = JobType(data["job_type"])
        data["priority"] = JobPriority(data.get("priority", "normal"))
        if "status" in data:
            data["status"] = JobStatus(data["status"])
        data["progress"] = JobProgress.from_dict(data.get("progress"))
        data["payload"] = data.get("payload") or {}

        return cls(**data)


TERMINAL_JOB_STATUSES = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.DEAD_LETTER,
    JobStatus.CANCELLED,
})


# Job status transition rules
JOB_STATUS_TRANSITIONS = {
    JobStatus.QUEUED: [JobStatus.RUNNING, JobStatus.CANCELLED],
    JobStatus.RUNNING: [
        JobStatus.SUCCEEDED,
        JobStatus.FAILED,
        JobStatus.QUEUED,
        JobStatus.DEAD_LETTER,
        JobStatus.CANCELLED,
    ],
    JobStatus.SUCCEEDED: [],
    JobStatus.FAILED: [],
    JobStatus.DEAD_LETTER: [JobStatus.QUEUED],
    JobStatus.CANCELLED: [],
}


def can_transition_to(current_status: JobStatus, target_status: JobStatus) -> bool:
    """Check if a job can transition from current status to target status."""
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    """Get list of valid transitions from current status."""
    return JOB_STATUS_TRANSITIONS.get(current_status, [])
