from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from opsqueue.config.logging import get_logger, setup_logging
from opsqueue.config.settings import Settings, StoreBackend, settings
from opsqueue.infra.database import Database
from opsqueue.v1.core.exceptions import (
    OpsQueueException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    ops_queue_exception_handler,
    validation_exception_handler,
)
from opsqueue.v1.healthz import router as health_router
from opsqueue.v1.infra.jobs.memory import InMemoryJobStore
from opsqueue.v1.infra.jobs.registry_init import JobSystem, build_job_system
from opsqueue.v1.infra.jobs.routes import router as jobs_router
from opsqueue.v1.infra.jobs.routes import worker_router
from opsqueue.v1.infra.jobs.store import SqlJobStore
from opsqueue.v1.pipeline.ideas import InMemoryIdeaStore, SqlIdeaStore

logger = get_logger(__name__)


def build_default_job_system(
    app_settings: Settings,
) -> tuple[JobSystem, Database | None]:
    """Stores for the configured backend, wired into a job system."""
    if app_settings.store_backend == StoreBackend.MEMORY:
        return (
            build_job_system(app_settings, InMemoryJobStore(), InMemoryIdeaStore()),
            None,
        )

    database = Database(app_settings)
    system = build_job_system(
        app_settings, SqlJobStore(database), SqlIdeaStore(database)
    )
    return system, database


def create_app(
    app_settings: Settings | None = None,
    job_system: JobSystem | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = app_settings or settings

    # Initialize structured logging
    setup_logging(app_settings)

    database = None
    if job_system is None:
        job_system, database = build_default_job_system(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Application starting",
            store_backend=app_settings.store_backend.value,
            environment=app_settings.environment,
        )
        yield
        if database is not None:
            await database.close()
        logger.info("Application stopped")

    app = FastAPI(
        title=app_settings.app_name,
        description="Background job queue with checkpointed pipelines",
        version=app_settings.version,
        debug=app_settings.debug,
        openapi_url="/v1/openapi.json" if app_settings.debug else None,
        docs_url="/v1/docs" if app_settings.debug else None,
        redoc_url="/v1/redoc" if app_settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.job_system = job_system

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if app_settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(OpsQueueException, ops_queue_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(worker_router, prefix="/v1")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "opsqueue.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
