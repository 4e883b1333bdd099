"""
Job queue models: status and type enums plus the ORM tables.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from opsqueue.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobType(str, Enum):
    """Closed set of job types; every member needs a registered handler."""

    NEWS_SCAN = "news_scan"
    EMAIL_SCAN = "email_scan"
    ADS_SYNC = "ads_sync"
    SCORE_IDEAS = "score_ideas"
    SELECT_DAILY = "select_daily"
    PROCESS_PIPELINE = "process_pipeline"

    @classmethod
    def parse(cls, value: str) -> "JobType | None":
        """Return the member for ``value`` or None for unknown tags."""
        try:
            return cls(value)
        except ValueError:
            return None


class ActivityType(str, Enum):
    JOB_FAILED_PERMANENTLY = "job_failed_permanently"
    BATCH_ENQUEUED = "batch_enqueued"


class PipelineLogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class Job(Base):
    """
    One unit of queued background work.

    Rows are never deleted: they end in completed, failed or cancelled.
    Every mutation after insert is a conditional update guarded by the
    expected current status.
    """

    __tablename__ = "job_queue"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Job-specific parameters",
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Higher claims first"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|processing|completed|failed|cancelled",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Successful claims so far"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, comment="Attempts before permanent failure"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Most recent failure message"
    )
    next_run_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        comment="Earliest time the job may be claimed",
    )
    claimed_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker that made the latest claim"
    )

    # Results
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Handler result data"
    )

    # Tracing and job chains
    correlation_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), nullable=True, comment="Links jobs of one workflow"
    )
    parent_job_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("job_queue.id"),
        nullable=True,
        comment="Job that enqueued this one",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )
    started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Indexes mirror the migration
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="valid_job_status",
        ),
        Index(
            "idx_job_queue_pending",
            "priority",
            "next_run_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index(
            "idx_job_queue_processing",
            "started_at",
            postgresql_where=text("status = 'processing'"),
        ),
        Index("idx_job_queue_type_status", "type", "status"),
    )


class ActivityLog(Base):
    """Audit trail for operator alerting (permanent failures, batch enqueues)."""

    __tablename__ = "job_activity_log"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict, server_default="{}"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )


class PipelineLog(Base):
    """
    Persisted progress entries of one pipeline job, one row per stage event.

    Rows outlive structured log output so a failed overnight run can be
    inspected per job afterwards.
    """

    __tablename__ = "pipeline_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    job_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("job_queue.id", ondelete="SET NULL"),
        nullable=True,
    )
    job_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    level: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=PipelineLogLevel.INFO.value,
        comment="info|warn|error",
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    step: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Pipeline stage the entry belongs to"
    )
    duration_ms: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Time spent in the step"
    )
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_pipeline_logs_job_id", "job_id", "created_at"),
        Index("idx_pipeline_logs_level_created", "level", "created_at"),
    )
