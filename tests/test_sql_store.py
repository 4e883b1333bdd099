"""
SQL job store tests against PostgreSQL.

Run only when DATABASE_URL points to a PostgreSQL database; the tables are
created and dropped around every test.
"""

import asyncio
import os
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from opsqueue.config.settings import Settings
from opsqueue.infra.database import Base, Database
from opsqueue.v1.infra.jobs import models  # noqa: F401
from opsqueue.v1.infra.jobs.models import JobStatus, JobType, PipelineLogLevel
from opsqueue.v1.infra.jobs.service import JobService
from opsqueue.v1.infra.jobs.store import SqlJobStore
from opsqueue.v1.pipeline import models as pipeline_models  # noqa: F401
from opsqueue.v1.pipeline.ideas import IdeaRecord, SqlIdeaStore
from opsqueue.v1.pipeline.logs import PipelineLogger
from opsqueue.v1.pipeline.models import IdeaStatus

DATABASE_URL = os.getenv("DATABASE_URL", "")

pytestmark = pytest.mark.skipif(
    "postgresql" not in DATABASE_URL,
    reason="SQL store tests need DATABASE_URL pointing to PostgreSQL",
)


@pytest.fixture
async def database():
    settings = Settings(
        _env_file=None, database_url=DATABASE_URL, debug=False, job_claim_jitter_ms=0
    )
    db = Database(settings)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield db

    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await db.close()


@pytest.fixture
async def sql_service(database):
    return JobService(SqlJobStore(database), database.settings)


async def test_supports_atomic_claim(database):
    assert SqlJobStore(database).supports_atomic_claim is True


async def test_enqueue_and_claim(sql_service):
    job_id = await sql_service.enqueue(JobType.NEWS_SCAN, {"feed": "hn"})

    job = await sql_service.claim_next_job("worker-1")

    assert job.id == job_id
    assert job.status == JobStatus.PROCESSING
    assert job.attempts == 1
    assert job.payload == {"feed": "hn"}
    assert await sql_service.claim_next_job("worker-2") is None


async def test_concurrent_atomic_claims(sql_service):
    for _ in range(3):
        await sql_service.enqueue(JobType.NEWS_SCAN)

    claimed = await asyncio.gather(
        *(sql_service.claim_next_job(f"worker-{i}") for i in range(6))
    )

    ids = [job.id for job in claimed if job is not None]
    assert len(ids) == len(set(ids))
    assert len(ids) <= 3


async def test_fail_and_retry_path(sql_service):
    job_id = await sql_service.enqueue(JobType.ADS_SYNC)
    await sql_service.claim_next_job()

    updated = await sql_service.fail_job(job_id, "boom")

    assert updated.status == JobStatus.PENDING
    assert updated.last_error == "boom"
    assert updated.next_run_at > datetime.now(UTC) + timedelta(seconds=25)
    assert await sql_service.fail_job(job_id, "boom") is None


async def test_settle_ignores_stale_claim(sql_service):
    job_id = await sql_service.enqueue(JobType.ADS_SYNC)
    job = await sql_service.claim_next_job("worker-1")

    assert await sql_service.complete_job(job_id, expected_attempts=job.attempts + 1) is False
    assert await sql_service.complete_job(job_id, expected_attempts=job.attempts) is True


async def test_pipeline_logs(database, sql_service):
    job_id = await sql_service.enqueue(JobType.PROCESS_PIPELINE)
    job = await sql_service.claim_next_job("worker-1")
    job_log = PipelineLogger(SqlJobStore(database), job)

    await job_log.stage_started("stage1_draft")
    await job_log.stage_failed("stage1_draft", RuntimeError("model timeout"), 1500)

    entries = await sql_service.get_pipeline_logs(job_id)
    assert [entry.level for entry in entries] == [
        PipelineLogLevel.INFO,
        PipelineLogLevel.ERROR,
    ]
    assert entries[1].duration_ms == 1500
    assert entries[1].details == {"attempt": 1, "error_type": "RuntimeError"}


async def test_stats_and_listing(sql_service):
    await sql_service.enqueue(JobType.NEWS_SCAN)
    cancelled = await sql_service.enqueue(JobType.ADS_SYNC)
    await sql_service.cancel_job(cancelled)

    stats = await sql_service.get_stats()
    assert stats.pending == 1
    assert stats.cancelled == 1

    jobs, total = await sql_service.list_jobs([JobStatus.CANCELLED])
    assert total == 1
    assert jobs[0].id == cancelled


async def test_idea_store_transition(database):
    ideas = SqlIdeaStore(database)
    idea = IdeaRecord(id=uuid4(), title="Queue depth alerts")
    await ideas.add(idea)

    marked = await ideas.transition(
        idea.id, {IdeaStatus.SELECTED}, {"status": IdeaStatus.PROCESSING}
    )
    assert marked.status == IdeaStatus.PROCESSING

    again = await ideas.transition(
        idea.id, {IdeaStatus.SELECTED}, {"status": IdeaStatus.PROCESSING}
    )
    assert again is None
