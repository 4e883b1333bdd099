"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from opsqueue.v1.infra.jobs.models import JobStatus, JobType, PipelineLogLevel


class EnqueueOptions(BaseModel):
    """Per-job enqueue options; unset values fall back to settings."""

    priority: int | None = Field(default=None, description="Higher claims first")
    max_attempts: int | None = Field(
        default=None, ge=1, description="Attempts before permanent failure"
    )
    correlation_id: UUID | None = Field(
        default=None, description="Links related jobs of one workflow"
    )
    parent_job_id: UUID | None = Field(
        default=None, description="Job that enqueued this one"
    )
    delay_seconds: float = Field(
        default=0, ge=0, description="Seconds before the job becomes claimable"
    )


class JobCreate(BaseModel):
    """Schema for creating a new job."""

    type: JobType = Field(..., description="Job type identifier")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    options: EnqueueOptions = Field(default_factory=EnqueueOptions)


class JobRecord(BaseModel):
    """Snapshot of one job row as returned by a job store."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 5
    last_error: str | None = None
    next_run_at: datetime
    claimed_by: str | None = None
    result: dict[str, Any] | None = None
    correlation_id: UUID | None = None
    parent_job_id: UUID | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def job_type(self) -> JobType | None:
        """The typed job tag, or None when the stored tag is unknown."""
        return JobType.parse(self.type)

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class PipelineLogRecord(BaseModel):
    """One persisted pipeline progress entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_id: UUID | None = None
    job_type: str | None = None
    level: PipelineLogLevel = PipelineLogLevel.INFO
    message: str
    step: str | None = None
    duration_ms: int | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


class JobOutcome(BaseModel):
    """Structured result returned by a job handler."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> "JobOutcome":
        return cls(success=True, data=data or {})

    @classmethod
    def fail(cls, error: str) -> "JobOutcome":
        return cls(success=False, error=error)


class JobRunResult(BaseModel):
    """Per-job entry of a worker summary."""

    job_id: UUID
    job_type: str
    status: str = Field(
        ..., description="completed | retrying | failed | stale | aborted"
    )
    attempt: int
    duration_ms: int
    error: str | None = None


class WorkerSummary(BaseModel):
    """Aggregate result of one time-boxed worker run."""

    worker_id: str
    success: bool
    duration_ms: int
    processed: int
    cleaned: int
    results: list[JobRunResult] = Field(default_factory=list)
    error: str | None = None
    aborted: bool = False


class JobStats(BaseModel):
    """Queue statistics over a recent time window."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    window_hours: int


class JobEnqueueRequest(BaseModel):
    """Schema for enqueueing jobs via API."""

    type: JobType = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    priority: int | None = Field(default=None, description="Job priority")
    max_attempts: int | None = Field(default=None, ge=1, description="Max attempts")
    correlation_id: UUID | None = Field(default=None, description="Correlation ID")
    parent_job_id: UUID | None = Field(default=None, description="Parent job ID")
    delay_seconds: float = Field(default=0, ge=0, description="Delay before running")

    def to_create(self) -> JobCreate:
        return JobCreate(
            type=self.type,
            payload=self.payload,
            options=EnqueueOptions(
                priority=self.priority,
                max_attempts=self.max_attempts,
                correlation_id=self.correlation_id,
                parent_job_id=self.parent_job_id,
                delay_seconds=self.delay_seconds,
            ),
        )


class JobBatchEnqueueRequest(BaseModel):
    """Schema for enqueueing several jobs at once."""

    jobs: list[JobEnqueueRequest] = Field(..., min_length=1)


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: str = JobStatus.PENDING.value


class JobBatchEnqueueResponse(BaseModel):
    """Schema for batch enqueue response."""

    job_ids: list[UUID]
    correlation_id: UUID | None = None


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobRecord]
    total: int
    limit: int
    offset: int


class CleanupResponse(BaseModel):
    cleaned: int
    threshold_minutes: int


class PipelineLogListResponse(BaseModel):
    job_id: UUID
    logs: list[PipelineLogRecord]
