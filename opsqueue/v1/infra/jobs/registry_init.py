"""
Job registry initialization.

Builds the handler dispatch table and the stuck-entity resetters for one
application instance. Nothing is registered at import time.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

from opsqueue.config.logging import get_logger
from opsqueue.config.settings import Settings
from opsqueue.v1.core.registries import HandlerRegistry, ResetterRegistry
from opsqueue.v1.infra.jobs.handlers import (
    CallableHandler,
    Collaborator,
    ContentPipelineHandler,
    SelectDailyHandler,
    build_content_pipeline,
    not_configured,
)
from opsqueue.v1.infra.jobs.models import JobType
from opsqueue.v1.infra.jobs.service import JobService, utcnow
from opsqueue.v1.infra.jobs.store import JobStore
from opsqueue.v1.infra.jobs.worker import JobWorker
from opsqueue.v1.pipeline.ideas import IdeaStore, StuckIdeaResetter
from opsqueue.v1.pipeline.runner import StageExecutor

logger = get_logger(__name__)

DELEGATED_JOB_TYPES = (
    JobType.NEWS_SCAN,
    JobType.EMAIL_SCAN,
    JobType.ADS_SYNC,
    JobType.SCORE_IDEAS,
)


def build_resetter_registry(ideas: IdeaStore) -> ResetterRegistry:
    """Register the entity resetters the stuck-job reaper calls."""
    resetters = ResetterRegistry()
    resetters.register(JobType.PROCESS_PIPELINE, StuckIdeaResetter(ideas))
    resetters.freeze()
    return resetters


def build_handler_registry(
    service: JobService,
    ideas: IdeaStore,
    collaborators: Mapping[JobType | str, Collaborator] | None = None,
    stage_executors: Mapping[str, StageExecutor] | None = None,
) -> HandlerRegistry:
    """
    Register a handler for every job type.

    Args:
        service: Job service used by handlers that chain follow-up jobs
        ideas: Idea store the content pipeline checkpoints to
        collaborators: Async callables keyed by job type, plus "select_daily"
            for the idea selector; missing ones fail with
            CollaboratorNotConfiguredError when called
        stage_executors: Content pipeline stage executors keyed by stage tag

    Raises:
        RuntimeError: A job type was left without a handler
    """
    collaborators = {
        (key.value if isinstance(key, JobType) else key): value
        for key, value in (collaborators or {}).items()
    }

    logger.info("Registering job handlers")
    registry = HandlerRegistry()

    for job_type in DELEGATED_JOB_TYPES:
        registry.register(
            job_type,
            CallableHandler(
                job_type,
                collaborators.get(job_type.value) or not_configured(job_type.value),
            ),
        )

    registry.register(
        JobType.SELECT_DAILY,
        SelectDailyHandler(
            service,
            collaborators.get(JobType.SELECT_DAILY.value)
            or not_configured(JobType.SELECT_DAILY.value),
            ideas,
        ),
    )

    registry.register(
        JobType.PROCESS_PIPELINE,
        ContentPipelineHandler(
            ideas,
            build_content_pipeline(stage_executors),
            logs=service.store,
            clock=service.clock,
        ),
    )

    registry.verify_complete(JobType)
    registry.freeze()

    logger.info("Job handlers registered", registered_handlers=registry.list())
    return registry


@dataclass
class JobSystem:
    """Stores, service and dispatch table of one application instance."""

    store: JobStore
    ideas: IdeaStore
    service: JobService
    handlers: HandlerRegistry

    def worker(self, time_budget_s: float, worker_id: str | None = None) -> JobWorker:
        return JobWorker(self.service, self.handlers, time_budget_s, worker_id)


def build_job_system(
    settings: Settings,
    store: JobStore,
    ideas: IdeaStore,
    collaborators: Mapping[JobType | str, Collaborator] | None = None,
    stage_executors: Mapping[str, StageExecutor] | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> JobSystem:
    """Wire a job service and its handlers around the given stores."""
    service = JobService(store, settings, build_resetter_registry(ideas), clock)
    handlers = build_handler_registry(service, ideas, collaborators, stage_executors)
    return JobSystem(store=store, ideas=ideas, service=service, handlers=handlers)
