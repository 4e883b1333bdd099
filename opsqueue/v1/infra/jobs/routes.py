"""
Job management and worker trigger API endpoints.
"""

import asyncio
import secrets
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings, SettingsDep
from opsqueue.v1.core.exceptions import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    create_success_response,
)
from opsqueue.v1.infra.jobs.models import JobStatus
from opsqueue.v1.infra.jobs.registry_init import JobSystem
from opsqueue.v1.infra.jobs.schemas import (
    CleanupResponse,
    JobBatchEnqueueRequest,
    JobBatchEnqueueResponse,
    JobEnqueueRequest,
    JobEnqueueResponse,
    JobListResponse,
    PipelineLogListResponse,
)
from opsqueue.v1.infra.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])
worker_router = APIRouter(prefix="/worker", tags=["worker"])


def get_job_system(request: Request) -> JobSystem:
    """Job system built by the application factory."""
    return request.app.state.job_system


JobSystemDep = Depends(get_job_system)


def get_job_service(system: JobSystem = JobSystemDep) -> JobService:
    return system.service


JobServiceDep = Depends(get_job_service)


def verify_cron_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = SettingsDep,
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>`` when a secret is configured."""
    if not settings.cron_secret:
        return

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        logger.warning("Unauthorized worker trigger attempt")
        raise UnauthorizedError()


async def _require_job(service: JobService, job_id: UUID):
    job = await service.get_job(job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": str(job_id)})
    return job


@router.post("", response_model=dict)
async def enqueue_job(
    job_request: JobEnqueueRequest,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Enqueue a new background job."""
    job_create = job_request.to_create()
    job_id = await service.enqueue(job_create.type, job_create.payload, job_create.options)

    logger.info("Job enqueued via API", job_id=str(job_id), job_type=job_create.type.value)

    return create_success_response(
        data=JobEnqueueResponse(job_id=job_id).model_dump(mode="json")
    )


@router.post("/batch", response_model=dict)
async def enqueue_jobs_batch(
    request: JobBatchEnqueueRequest,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Enqueue several jobs; either all are created or none."""
    job_ids = await service.enqueue_batch([job.to_create() for job in request.jobs])

    logger.info("Batch enqueued via API", count=len(job_ids))

    return create_success_response(
        data=JobBatchEnqueueResponse(job_ids=job_ids).model_dump(mode="json")
    )


@router.post("/presets/{name}", response_model=dict)
async def enqueue_preset(
    name: str,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Enqueue a named batch (morning, evening) under one correlation id."""
    job_ids, correlation_id = await service.enqueue_preset(name)

    response = JobBatchEnqueueResponse(job_ids=job_ids, correlation_id=correlation_id)
    return create_success_response(
        data=response.model_dump(mode="json"),
        message=f"Preset '{name}' enqueued: {len(job_ids)} jobs",
    )


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(default=None, description="Filter by status"),
    type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination, newest first."""
    jobs, total = await service.list_jobs(status, type, limit, offset)

    response_data = JobListResponse(jobs=jobs, total=total, limit=limit, offset=offset)
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/failed", response_model=dict)
async def list_failed_jobs(
    limit: int = Query(default=10, ge=1, le=100, description="Maximum results"),
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Most recent permanently failed jobs."""
    jobs = await service.get_failed_jobs(limit)
    return create_success_response(data=[job.model_dump(mode="json") for job in jobs])


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    window_hours: int | None = Query(default=None, ge=1, le=24 * 30),
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Job counts by status and type for jobs created within the window."""
    stats = await service.get_stats(window_hours)
    return create_success_response(data=stats.model_dump())


@router.post("/cleanup", response_model=dict)
async def cleanup_stuck_jobs(
    threshold_minutes: int | None = Query(default=None, ge=0),
    service: JobService = JobServiceDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Fail jobs stuck in processing and reset the entities behind them."""
    threshold = (
        threshold_minutes
        if threshold_minutes is not None
        else settings.job_stuck_threshold_minutes
    )
    cleaned = await service.cleanup_stuck_jobs(threshold)

    response = CleanupResponse(cleaned=cleaned, threshold_minutes=threshold)
    return create_success_response(data=response.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await _require_job(service, job_id)
    return create_success_response(data=job.model_dump(mode="json"))


@router.get("/{job_id}/logs", response_model=dict)
async def get_job_logs(
    job_id: UUID,
    limit: int = Query(default=200, ge=1, le=1000, description="Maximum entries"),
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Persisted pipeline log entries of a job, oldest first."""
    await _require_job(service, job_id)
    logs = await service.get_pipeline_logs(job_id, limit)

    response = PipelineLogListResponse(job_id=job_id, logs=logs)
    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Retry a failed job with a fresh attempt budget."""
    if not await service.retry_job(job_id):
        job = await _require_job(service, job_id)
        raise ConflictError(
            "Only failed jobs can be retried",
            details={"job_id": str(job_id), "status": job.status.value},
        )

    logger.info("Job retried via API", job_id=str(job_id))
    return create_success_response(data={"success": True, "job_id": str(job_id)})


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    service: JobService = JobServiceDep,
) -> dict[str, Any]:
    """Cancel a pending job."""
    if not await service.cancel_job(job_id):
        job = await _require_job(service, job_id)
        raise ConflictError(
            "Only pending jobs can be cancelled",
            details={"job_id": str(job_id), "status": job.status.value},
        )

    logger.info("Job cancelled via API", job_id=str(job_id))
    return create_success_response(data={"success": True, "job_id": str(job_id)})


@worker_router.api_route(
    "/run",
    methods=["GET", "POST"],
    response_model=dict,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_worker(
    system: JobSystem = JobSystemDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """
    Run one time-boxed worker invocation (scheduler trigger).

    The run is bounded by TRIGGER_TIMEOUT_S. On timeout the stuck-job reaper
    still runs, and the summary of the work done so far (including the job
    that was interrupted) is returned with success false.
    """
    worker = system.worker(settings.worker_time_budget_s, settings.worker_id)

    try:
        summary = await asyncio.wait_for(worker.run(), timeout=settings.trigger_timeout_s)
    except TimeoutError:
        logger.error(
            "Worker run exceeded trigger timeout",
            worker_id=worker.worker_id,
            trigger_timeout_s=settings.trigger_timeout_s,
        )
        # No-op if the cancelled run already got through its reaper
        await worker.reap()
        summary = worker.partial_summary(aborted=True)

    message = None if summary.success else "Worker run finished with errors"
    return create_success_response(data=summary.model_dump(mode="json"), message=message)
