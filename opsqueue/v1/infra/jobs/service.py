"""
Job service for enqueueing, claiming and settling background jobs.
"""

import asyncio
import random
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import ClaimStrategy, Settings
from opsqueue.v1.core.exceptions import NotFoundError, PersistenceError, ValidationError
from opsqueue.v1.core.registries import ResetterRegistry
from opsqueue.v1.infra.jobs.batches import build_preset_jobs, list_presets
from opsqueue.v1.infra.jobs.models import ActivityType, JobStatus, JobType
from opsqueue.v1.infra.jobs.retry import decide_failure
from opsqueue.v1.infra.jobs.schemas import (
    EnqueueOptions,
    JobCreate,
    JobRecord,
    JobStats,
    PipelineLogRecord,
)
from opsqueue.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


def _stale_claim(job: JobRecord, expected_attempts: int | None) -> bool:
    """True when ``job`` has been re-claimed since the attempt being settled."""
    if expected_attempts is None or job.attempts == expected_attempts:
        return False
    logger.warning(
        "Job failure ignored, job was re-claimed",
        job_id=str(job.id),
        expected_attempts=expected_attempts,
        attempts=job.attempts,
    )
    return True


class JobService:
    """Service for managing background jobs."""

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        resetters: ResetterRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.resetters = resetters or ResetterRegistry()
        self.clock = clock

    # Enqueueing

    def _build_record(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None,
        options: EnqueueOptions | None,
        now: datetime,
    ) -> JobRecord:
        parsed = job_type if isinstance(job_type, JobType) else JobType.parse(job_type)
        if parsed is None:
            raise ValidationError(
                f"Unknown job type: {job_type}",
                details={"valid_types": [t.value for t in JobType]},
            )

        options = options or EnqueueOptions()
        priority = (
            options.priority
            if options.priority is not None
            else self.settings.job_default_priority
        )
        max_attempts = (
            options.max_attempts
            if options.max_attempts is not None
            else self.settings.job_default_max_attempts
        )

        return JobRecord(
            id=uuid.uuid4(),
            type=parsed.value,
            payload=dict(payload or {}),
            priority=priority,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            next_run_at=now + timedelta(seconds=options.delay_seconds),
            correlation_id=options.correlation_id,
            parent_job_id=options.parent_job_id,
            created_at=now,
        )

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        options: EnqueueOptions | None = None,
    ) -> UUID:
        """
        Enqueue a new job.

        Args:
            job_type: Job type; unknown types are rejected before writing
            payload: Job-specific parameters
            options: Priority, attempts, tracing ids and delay

        Returns:
            The new job id

        Raises:
            ValidationError: Unknown job type
            PersistenceError: The store rejected the write
        """
        record = self._build_record(job_type, payload, options, self.clock())

        try:
            await self.store.insert([record])
        except PersistenceError:
            logger.error("Failed to enqueue job", job_type=record.type)
            raise

        logger.info(
            "Job enqueued",
            job_id=str(record.id),
            job_type=record.type,
            priority=record.priority,
            next_run_at=record.next_run_at.isoformat(),
        )
        return record.id

    async def enqueue_batch(self, jobs: list[JobCreate]) -> list[UUID]:
        """Enqueue several jobs in one write; either all are inserted or none."""
        now = self.clock()
        records = [
            self._build_record(job.type, job.payload, job.options, now) for job in jobs
        ]

        try:
            ids = await self.store.insert(records)
        except PersistenceError:
            logger.error("Failed to enqueue batch", count=len(records))
            raise

        logger.info("Batch enqueued", count=len(ids))
        return ids

    async def enqueue_preset(self, name: str) -> tuple[list[UUID], UUID]:
        """Enqueue a named batch under a fresh correlation id."""
        correlation_id = uuid.uuid4()
        try:
            jobs = build_preset_jobs(name, correlation_id)
        except KeyError:
            raise NotFoundError(
                f"Unknown preset: {name}", details={"presets": list_presets()}
            ) from None

        ids = await self.enqueue_batch(jobs)
        await self.store.record_activity(
            ActivityType.BATCH_ENQUEUED.value,
            "job_queue",
            None,
            {
                "preset": name,
                "correlation_id": str(correlation_id),
                "jobs": [
                    {"id": str(job_id), "type": job.type.value}
                    for job_id, job in zip(ids, jobs, strict=True)
                ],
            },
        )

        logger.info(
            "Preset enqueued",
            preset=name,
            correlation_id=str(correlation_id),
            count=len(ids),
        )
        return ids, correlation_id

    # Claiming

    def _use_atomic_claim(self) -> bool:
        strategy = self.settings.job_claim_strategy
        if strategy == ClaimStrategy.OPTIMISTIC:
            return False
        if not self.store.supports_atomic_claim:
            if strategy == ClaimStrategy.ATOMIC:
                logger.warning(
                    "Atomic claim requested but unsupported by store, "
                    "using optimistic claim"
                )
            return False
        return True

    async def claim_next_job(self, worker_id: str = "default") -> JobRecord | None:
        """
        Claim the highest priority ready job for ``worker_id``.

        Tries the store's single-statement claim first and falls back to a
        bounded optimistic loop. Returns None when nothing is ready or every
        attempt lost its race.
        """
        if self._use_atomic_claim():
            try:
                job = await self.store.claim_atomic(worker_id, self.clock())
            except PersistenceError as e:
                logger.warning(
                    "Atomic claim failed, falling back to optimistic claim",
                    worker_id=worker_id,
                    error=e.message,
                )
            else:
                if job:
                    logger.info(
                        "Job claimed",
                        job_id=str(job.id),
                        job_type=job.type,
                        attempt=job.attempts,
                        method="atomic",
                    )
                return job

        return await self._claim_optimistic(worker_id)

    async def _claim_optimistic(self, worker_id: str) -> JobRecord | None:
        max_attempts = self.settings.job_claim_max_attempts

        for attempt in range(1, max_attempts + 1):
            now = self.clock()
            candidate = await self.store.find_claim_candidate(now)
            if candidate is None:
                return None

            claimed = await self.store.transition(
                candidate.id,
                JobStatus.PENDING,
                {
                    "status": JobStatus.PROCESSING,
                    "started_at": now,
                    "attempts": candidate.attempts + 1,
                    "claimed_by": worker_id,
                },
                expected_attempts=candidate.attempts,
            )
            if claimed:
                logger.info(
                    "Job claimed",
                    job_id=str(claimed.id),
                    job_type=claimed.type,
                    attempt=claimed.attempts,
                    method="optimistic",
                )
                return claimed

            logger.debug(
                "Claim race lost",
                job_id=str(candidate.id),
                worker_id=worker_id,
                claim_attempt=attempt,
            )
            jitter_ms = self.settings.job_claim_jitter_ms
            if jitter_ms and attempt < max_attempts:
                await asyncio.sleep(random.uniform(0, jitter_ms) / 1000)

        logger.info(
            "No job claimed after repeated races",
            worker_id=worker_id,
            attempts=max_attempts,
        )
        return None

    # Settling

    async def complete_job(
        self,
        job_id: UUID,
        result: dict[str, Any] | None = None,
        expected_attempts: int | None = None,
    ) -> bool:
        """
        Mark a processing job completed.

        With ``expected_attempts`` only the claim that made that attempt can
        complete the job. Returns False if the job was no longer processing
        or has been re-claimed since.
        """
        updated = await self.store.transition(
            job_id,
            JobStatus.PROCESSING,
            {
                "status": JobStatus.COMPLETED,
                "completed_at": self.clock(),
                "result": result or {},
            },
            expected_attempts=expected_attempts,
        )

        if updated is None:
            logger.warning(
                "Job completion ignored, job is no longer processing",
                job_id=str(job_id),
            )
            return False

        logger.info("Job completed", job_id=str(job_id), job_type=updated.type)
        return True

    async def fail_job(
        self,
        job_id: UUID,
        error: str,
        base_delay_seconds: float | None = None,
        expected_attempts: int | None = None,
    ) -> JobRecord | None:
        """
        Record a failed attempt, scheduling a retry or failing permanently.

        Safe to call repeatedly: jobs that are missing or no longer processing
        are left untouched and None is returned. A worker passes the attempt
        number of its claim as ``expected_attempts`` so a late failure cannot
        settle a newer claim of the same job.
        """
        job = await self.store.get(job_id)
        if job is None:
            logger.error("Failed to fetch job for failure handling", job_id=str(job_id))
            return None

        if job.status != JobStatus.PROCESSING:
            logger.info(
                "Job failure ignored, job is not processing",
                job_id=str(job_id),
                status=job.status.value,
            )
            return None

        if _stale_claim(job, expected_attempts):
            return None

        now = self.clock()
        base = (
            base_delay_seconds
            if base_delay_seconds is not None
            else self.settings.job_retry_base_delay_s
        )
        decision = decide_failure(
            job.attempts, job.max_attempts, now, base, self.settings.job_max_backoff_s
        )

        if decision.terminal:
            return await self._fail_terminal(job, error, now)

        updated = await self.store.transition(
            job_id,
            JobStatus.PROCESSING,
            {
                "status": JobStatus.PENDING,
                "last_error": error,
                "next_run_at": decision.next_run_at,
            },
            expected_attempts=job.attempts,
        )
        if updated is None:
            logger.info("Job failure lost race", job_id=str(job_id))
            return None

        logger.info(
            "Job scheduled for retry",
            job_id=str(job_id),
            job_type=job.type,
            attempt=job.attempts,
            next_retry_in=f"{decision.backoff_seconds:g}s",
        )
        return updated

    async def fail_job_permanently(
        self, job_id: UUID, error: str, expected_attempts: int | None = None
    ) -> JobRecord | None:
        """Fail a processing job without retrying, whatever its attempt count."""
        job = await self.store.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            logger.info(
                "Permanent failure ignored, job is not processing", job_id=str(job_id)
            )
            return None
        if _stale_claim(job, expected_attempts):
            return None
        return await self._fail_terminal(job, error, self.clock())

    async def _fail_terminal(
        self, job: JobRecord, error: str, now: datetime
    ) -> JobRecord | None:
        updated = await self.store.transition(
            job.id,
            JobStatus.PROCESSING,
            {"status": JobStatus.FAILED, "last_error": error, "completed_at": now},
            expected_attempts=job.attempts,
        )
        if updated is None:
            logger.info("Job failure lost race", job_id=str(job.id))
            return None

        logger.warning(
            "Job failed permanently",
            job_id=str(job.id),
            job_type=job.type,
            attempts=job.attempts,
            error=error,
        )

        # Audit record for alerting
        await self.store.record_activity(
            ActivityType.JOB_FAILED_PERMANENTLY.value,
            "job_queue",
            str(job.id),
            {
                "job_type": job.type,
                "attempts": job.attempts,
                "error": error,
                "correlation_id": str(job.correlation_id)
                if job.correlation_id
                else None,
            },
        )
        return updated

    # Operator actions

    async def cancel_job(self, job_id: UUID) -> bool:
        """Cancel a pending job. Processing jobs cannot be cancelled."""
        updated = await self.store.transition(
            job_id,
            JobStatus.PENDING,
            {"status": JobStatus.CANCELLED, "completed_at": self.clock()},
        )

        if updated:
            logger.info("Job cancelled", job_id=str(job_id))
        return updated is not None

    async def retry_job(self, job_id: UUID) -> bool:
        """Put a failed job back in the queue with a fresh attempt budget."""
        updated = await self.store.transition(
            job_id,
            JobStatus.FAILED,
            {
                "status": JobStatus.PENDING,
                "attempts": 0,
                "next_run_at": self.clock(),
                "completed_at": None,
            },
        )

        if updated:
            logger.info("Job retried", job_id=str(job_id))
        return updated is not None

    async def cleanup_stuck_jobs(self, threshold_minutes: int | None = None) -> int:
        """
        Fail jobs stuck in processing longer than ``threshold_minutes``.

        Each stuck job goes through the normal failure path, so it is retried
        or failed permanently depending on its attempts. Afterwards the
        resetter registered for its type recovers the entity it was working on.

        Returns:
            Number of jobs actually transitioned
        """
        threshold = (
            threshold_minutes
            if threshold_minutes is not None
            else self.settings.job_stuck_threshold_minutes
        )
        cutoff = self.clock() - timedelta(minutes=threshold)
        stuck_jobs = await self.store.find_stuck(cutoff)

        cleaned = 0
        for job in stuck_jobs:
            updated = await self.fail_job(
                job.id,
                f"Job timed out (stuck in processing for {threshold} minutes)",
                expected_attempts=job.attempts,
            )
            if updated is None:
                continue
            cleaned += 1

            resetter = self.resetters.find(job.type)
            if resetter is None:
                continue
            try:
                reset = await resetter.reset(job)
            except Exception:
                logger.exception(
                    "Failed to reset entity for stuck job",
                    job_id=str(job.id),
                    job_type=job.type,
                )
                continue
            if reset:
                logger.info(
                    "Reset entities for stuck job",
                    job_id=str(job.id),
                    job_type=job.type,
                    count=reset,
                )

        if cleaned:
            logger.info(
                "Cleaned up stuck jobs", count=cleaned, threshold_minutes=threshold
            )
        return cleaned

    # Queries

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        return await self.store.get(job_id)

    async def list_jobs(
        self,
        statuses: list[JobStatus] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        return await self.store.list_jobs(statuses, job_type, limit, offset)

    async def get_failed_jobs(self, limit: int = 10) -> list[JobRecord]:
        return await self.store.list_failed(limit)

    async def get_pipeline_logs(
        self, job_id: UUID, limit: int = 200
    ) -> list[PipelineLogRecord]:
        """Persisted pipeline log entries of one job, oldest first."""
        return await self.store.list_pipeline_logs(job_id, limit)

    async def get_stats(self, window_hours: int | None = None) -> JobStats:
        """Count jobs created within the window by status and by type."""
        window = (
            window_hours
            if window_hours is not None
            else self.settings.job_stats_window_hours
        )
        since = self.clock() - timedelta(hours=window)
        rows = await self.store.count_by_status_and_type(since)

        counts: dict[str, int] = {status.value: 0 for status in JobStatus}
        by_type: dict[str, int] = {}
        for status, job_type, count in rows:
            counts[status] = counts.get(status, 0) + count
            by_type[job_type] = by_type.get(job_type, 0) + count

        return JobStats(**counts, by_type=by_type, window_hours=window)
