"""
Persisted per-job pipeline logs.

Stage events are logged through structlog like everything else and are also
written to the job store, so the progress of a single pipeline job can be read
back through the API after the worker that ran it is gone.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID, uuid4

from opsqueue.config.logging import get_logger
from opsqueue.v1.core.exceptions import PersistenceError
from opsqueue.v1.infra.jobs.models import PipelineLogLevel
from opsqueue.v1.infra.jobs.schemas import JobRecord, PipelineLogRecord

logger = get_logger(__name__)


class PipelineLogSink(Protocol):
    async def record_pipeline_log(self, entry: PipelineLogRecord) -> None: ...


class PipelineLogger:
    """
    Writes pipeline log entries for one claimed job.

    Implements the runner's StageObserver. A failed write is logged and
    dropped: the job outcome never depends on its progress log.
    """

    def __init__(
        self,
        sink: PipelineLogSink,
        job: JobRecord,
        clock: Callable[[], datetime] | None = None,
    ):
        self.sink = sink
        self.job_id: UUID = job.id
        self.job_type = job.type
        self.attempt = job.attempts
        self.clock = clock or (lambda: datetime.now(UTC))

    async def log(
        self,
        level: PipelineLogLevel,
        message: str,
        step: str | None = None,
        duration_ms: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry = PipelineLogRecord(
            id=uuid4(),
            job_id=self.job_id,
            job_type=self.job_type,
            level=level,
            message=message,
            step=step,
            duration_ms=duration_ms,
            details={"attempt": self.attempt, **(details or {})},
            created_at=self.clock(),
        )

        try:
            await self.sink.record_pipeline_log(entry)
        except PersistenceError as e:
            logger.warning(
                "Failed to persist pipeline log",
                job_id=str(self.job_id),
                step=step,
                error=e.message,
            )

    async def info(self, message: str, step: str | None = None, **details: Any) -> None:
        await self.log(PipelineLogLevel.INFO, message, step, details=details)

    async def stage_started(self, tag: str) -> None:
        await self.log(PipelineLogLevel.INFO, f"Stage {tag} started", tag)

    async def stage_completed(self, tag: str, duration_ms: int) -> None:
        await self.log(PipelineLogLevel.INFO, f"Stage {tag} completed", tag, duration_ms)

    async def stage_failed(self, tag: str, error: Exception, duration_ms: int) -> None:
        await self.log(
            PipelineLogLevel.ERROR,
            str(error) or error.__class__.__name__,
            tag,
            duration_ms,
            {"error_type": error.__class__.__name__},
        )
