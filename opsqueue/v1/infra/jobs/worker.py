"""
Time-boxed job worker.

One invocation claims and processes jobs sequentially until the time budget
is spent or the queue is empty, then runs the stuck-job reaper once. It never
raises: every outcome, including a crashed loop, ends up in the summary.
"""

import os
import socket
import time
from collections.abc import Callable

from opsqueue.config.logging import get_logger, job_context
from opsqueue.v1.core.registries import HandlerRegistry
from opsqueue.v1.infra.jobs.models import JobStatus
from opsqueue.v1.infra.jobs.schemas import (
    JobOutcome,
    JobRecord,
    JobRunResult,
    WorkerSummary,
)
from opsqueue.v1.infra.jobs.service import JobService

logger = get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class JobWorker:
    """
    Sequential worker for a single, time-limited invocation.

    Features:
    - Claims through the job service (atomic claim with optimistic fallback)
    - Dispatches through an exhaustive handler registry
    - Converts handler exceptions into the retry path
    - Always runs the stuck-job reaper and always returns a summary
    """

    def __init__(
        self,
        service: JobService,
        registry: HandlerRegistry,
        time_budget_s: float,
        worker_id: str | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.service = service
        self.registry = registry
        self.time_budget_s = time_budget_s
        self.worker_id = worker_id or default_worker_id()
        self._monotonic = monotonic
        self._reset()

    def _reset(self) -> None:
        self._started: float | None = None
        self._results: list[JobRunResult] = []
        self._cleaned = 0
        self._reaped = False
        self._error: str | None = None
        # Claimed job whose handler is running, with its start time
        self._current: JobRecord | None = None
        self._current_started = 0.0

    def _elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return self._monotonic() - self._started

    def _record_error(self, message: str) -> None:
        self._error = f"{self._error}; {message}" if self._error else message

    def _run_result(
        self, job: JobRecord, status: str, error: str | None = None
    ) -> JobRunResult:
        return JobRunResult(
            job_id=job.id,
            job_type=job.type,
            status=status,
            attempt=job.attempts,
            duration_ms=int((self._monotonic() - self._current_started) * 1000),
            error=error,
        )

    def partial_summary(self, aborted: bool = False) -> WorkerSummary:
        """
        Summary of the work done so far.

        When the run was aborted, the job that was still being handled is
        reported with status ``aborted``. Its attempt is already spent and the
        stuck-job reaper will settle it later.
        """
        error = self._error
        results = list(self._results)
        if aborted:
            if error is None:
                error = "Worker aborted before finishing"
            if self._current is not None:
                results.append(
                    self._run_result(
                        self._current, "aborted", "Worker aborted while the job was running"
                    )
                )
        return WorkerSummary(
            worker_id=self.worker_id,
            success=error is None,
            duration_ms=int(self._elapsed() * 1000),
            processed=len(results),
            cleaned=self._cleaned,
            results=results,
            error=error,
            aborted=aborted,
        )

    async def run(self) -> WorkerSummary:
        """Process jobs until the budget is spent or none are ready, then reap."""
        self._reset()
        self._started = self._monotonic()

        logger.info(
            "Worker starting",
            worker_id=self.worker_id,
            time_budget_s=self.time_budget_s,
        )

        try:
            while self._elapsed() < self.time_budget_s:
                job = await self.service.claim_next_job(self.worker_id)
                if job is None:
                    logger.info("No more pending jobs", worker_id=self.worker_id)
                    break
                self._results.append(await self._process_job(job))
        except Exception as e:
            logger.exception("Worker loop failed", worker_id=self.worker_id)
            self._record_error(str(e) or e.__class__.__name__)

        await self.reap()

        summary = self.partial_summary()
        logger.info(
            "Worker complete",
            worker_id=self.worker_id,
            duration_ms=summary.duration_ms,
            processed=summary.processed,
            cleaned=summary.cleaned,
            success=summary.success,
        )
        return summary

    async def reap(self) -> int:
        """
        Run the stuck-job reaper for this invocation.

        Called at the end of ``run`` and by the trigger when ``run`` was
        cancelled on timeout; once the reaper has run, later calls do nothing.
        A reaper failure is recorded in the summary instead of raised.
        """
        if self._reaped:
            return self._cleaned

        try:
            self._cleaned = await self.service.cleanup_stuck_jobs()
        except Exception as e:
            logger.exception("Stuck job cleanup failed", worker_id=self.worker_id)
            self._record_error(f"Stuck job cleanup failed: {e}")
        self._reaped = True
        return self._cleaned

    async def _process_job(self, job: JobRecord) -> JobRunResult:
        """Dispatch one claimed job and settle it."""
        self._current = job
        self._current_started = self._monotonic()
        with job_context(
            job_id=str(job.id),
            job_type=job.type,
            attempt=job.attempts,
            worker_id=self.worker_id,
        ):
            result = await self._dispatch(job)
        self._current = None
        return result

    async def _dispatch(self, job: JobRecord) -> JobRunResult:
        logger.info("Processing job started", payload=job.payload)

        # Settle only the claim this worker made
        claimed_attempt = job.attempts

        job_type = job.job_type
        handler = self.registry.find(job_type) if job_type else None
        if handler is None:
            error = f"Unknown job type: {job.type}"
            logger.error("No handler for job", error=error)
            await self.service.fail_job_permanently(
                job.id, error, expected_attempts=claimed_attempt
            )
            return self._run_result(job, "failed", error)

        try:
            outcome = await handler.handle(job)
        except Exception as e:
            logger.exception("Job handler raised")
            outcome = JobOutcome.fail(str(e) or e.__class__.__name__)

        if outcome.success:
            if await self.service.complete_job(
                job.id, outcome.data, expected_attempts=claimed_attempt
            ):
                logger.info("Processing job completed successfully")
                return self._run_result(job, "completed")
            return self._run_result(
                job, "stale", "Job was no longer processing at completion"
            )

        error = outcome.error or "Unknown error"
        logger.warning("Job failed", error=error)
        updated = await self.service.fail_job(
            job.id, error, expected_attempts=claimed_attempt
        )
        if updated is None:
            return self._run_result(job, "stale", error)
        if updated.status == JobStatus.FAILED:
            return self._run_result(job, "failed", error)
        return self._run_result(job, "retrying", error)
