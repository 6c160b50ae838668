"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Literal, Optional

from pydantic import BaseModel, Field, computed_field

MAX_PATH_LENGTH = 1024


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → running      (dispatcher acquires a slot)
        pending → cancelled    (user cancel)
        running → completed    (pipeline succeeds)
        running → failed       (pipeline error or restart recovery)
        running → cancelled    (user cancel or shutdown)
        running → paused       (user pause)
        paused  → pending      (user resume, re-enqueued)
        paused  → cancelled    (user cancel)
        failed | cancelled → pending   (user retry)
    """

    PENDING = "pending"  # Queued, waiting for a slot
    RUNNING = "running"  # Pipeline in flight
    PAUSED = "paused"  # Stopped on request, resumable
    COMPLETED = "completed"  # Output written successfully
    FAILED = "failed"  # Pipeline error (retryable)
    CANCELLED = "cancelled"  # Stopped by user (retryable)


ACTIVE_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED}
)
COMPLETED_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED})
FAILED_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})

STATUS_GROUPS: Dict[str, FrozenSet[JobStatus]] = {
    "active": ACTIVE_STATUSES,
    "completed": COMPLETED_STATUSES,
    "failed": FAILED_STATUSES,
}


class ProcessingKind(str, Enum):
    """Selects the plugin that builds a job's pipeline."""

    RIFE = "rife"  # Frame interpolation
    REAL_CUGAN = "real_cugan"  # AI super-resolution (Real-CUGAN)
    REAL_ESRGAN = "real_esrgan"  # AI super-resolution (Real-ESRGAN)
    NON_AI = "non_ai"  # FFmpeg scaling filters


class Job(BaseModel):
    """One queued transcoding job and its persisted lifecycle state."""

    job_id: str = Field(default_factory=new_job_id, description="Unique job identifier (UUID hex)")
    source_video_path: str = Field(..., max_length=MAX_PATH_LENGTH, description="Input video")
    output_path: str = Field(..., max_length=MAX_PATH_LENGTH, description="Output video")
    processing_kind: ProcessingKind = Field(..., description="Plugin selector")
    settings: Dict[str, Any] = Field(
        default_factory=dict, description="Plugin settings payload (opaque to the queue)"
    )
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")

    created_at: datetime = Field(default_factory=utcnow, description="Creation time (UTC)")
    queued_at: Optional[datetime] = Field(default=None, description="Last time enqueued")
    started_at: Optional[datetime] = Field(default=None, description="Last run start time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal state time")
    last_updated_at: datetime = Field(default_factory=utcnow, description="Last write time")

    progress_percentage: float = Field(default=0.0, ge=0.0, le=100.0)
    current_frame: int = Field(default=0, ge=0)
    total_frames: Optional[int] = Field(default=None, ge=0)
    estimated_time_remaining_s: Optional[float] = Field(default=None, ge=0.0)

    last_error: Optional[str] = Field(default=None, description="Operator-facing error message")
    error_detail: Optional[str] = Field(
        default=None, description="Lower-level diagnostic text (stderr tail, traceback)"
    )
    retry_count: int = Field(default=0, ge=0, description="Manual retries so far")
    max_retries: int = Field(default=3, ge=0, description="Retry ceiling (when enforced)")

    owning_process_id: Optional[int] = Field(default=None, description="PID running the job")
    owning_host_name: Optional[str] = Field(default=None, description="Host running the job")
    output_file_size_bytes: Optional[int] = Field(default=None, ge=0)

    class Config:
        """Pydantic configuration."""

        validate_assignment = True

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobEvent(BaseModel):
    """Progress or status notification for one job."""

    event: Literal["progress", "status"] = Field(..., description="Notification type")
    job_id: str
    status: JobStatus
    progress_percentage: float = 0.0
    current_frame: int = 0
    total_frames: Optional[int] = None
    estimated_time_remaining_s: Optional[float] = None
    error_message: Optional[str] = Field(default=None, description="Status events only")
    error_kind: Optional[str] = Field(
        default=None, description="Failure classification of the run that just ended"
    )
    configuration_error: bool = Field(
        default=False, description="Retrying is pointless until settings or tools change"
    )
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_job(
        cls,
        event: str,
        job: Job,
        error_message: Optional[str] = None,
        error_kind: Optional[str] = None,
        configuration_error: bool = False,
    ) -> "JobEvent":
        return cls(
            event=event,
            job_id=job.job_id,
            status=job.status,
            progress_percentage=job.progress_percentage,
            current_frame=job.current_frame,
            total_frames=job.total_frames,
            estimated_time_remaining_s=job.estimated_time_remaining_s,
            error_message=error_message if event == "status" else None,
            error_kind=error_kind if event == "status" else None,
            configuration_error=configuration_error and event == "status",
        )


class QueueStatistics(BaseModel):
    """Per-status job counts. ``failed`` includes cancelled jobs."""

    pending: int = 0
    running: int = 0
    paused: int = 0
    completed: int = 0
    failed: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.pending + self.running + self.paused + self.completed + self.failed


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
