import time
from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings, SettingsDep
from opsqueue.v1.core.exceptions import OpsQueueException, create_success_response
from opsqueue.v1.infra.jobs.models import JobStatus
from opsqueue.v1.infra.jobs.registry_init import JobSystem
from opsqueue.v1.infra.jobs.routes import JobSystemDep

logger = get_logger(__name__)
router = APIRouter()


class StoreHealth(BaseModel):
    """Job store health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Queue depth snapshot."""

    pending: int = 0
    processing: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep,
    system: JobSystem = JobSystemDep,
):
    """Health check with store connectivity and queue depth."""

    timestamp = datetime.now(UTC).isoformat()

    store_health = await _check_store_health(system)

    queue_health = None
    if store_health.connected:
        try:
            queue_health = await _check_queue_health(system)
        except OpsQueueException as e:
            # Queue depth is informational; connectivity decides health
            logger.warning("Queue health check failed", error=e.message)

    health_data = {
        "ok": store_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "store": store_health.model_dump(),
        "queue": queue_health.model_dump() if queue_health else None,
    }

    return create_success_response(data=health_data)


async def _check_store_health(system: JobSystem) -> StoreHealth:
    """Check store connectivity and response time."""
    start_time = time.perf_counter()

    try:
        await system.store.ping()
    except OpsQueueException as e:
        return StoreHealth(connected=False, error=e.message)

    response_time_ms = (time.perf_counter() - start_time) * 1000
    return StoreHealth(connected=True, response_time_ms=round(response_time_ms, 2))


async def _check_queue_health(system: JobSystem) -> QueueHealth:
    _, pending = await system.service.list_jobs([JobStatus.PENDING], limit=1)
    _, processing = await system.service.list_jobs([JobStatus.PROCESSING], limit=1)
    return QueueHealth(pending=pending, processing=processing)
