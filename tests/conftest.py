from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from opsqueue.config.settings import Settings, StoreBackend
from opsqueue.v1.infra.jobs.memory import InMemoryJobStore
from opsqueue.v1.infra.jobs.models import JobStatus
from opsqueue.v1.infra.jobs.registry_init import build_job_system
from opsqueue.v1.infra.jobs.schemas import JobRecord
from opsqueue.v1.infra.jobs.service import JobService
from opsqueue.v1.pipeline.ideas import InMemoryIdeaStore


class MutableClock:
    """Test clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 7, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings for tests: memory backend, no claim jitter, short budgets."""
    return Settings(
        _env_file=None,
        environment="test",
        store_backend=StoreBackend.MEMORY,
        job_claim_jitter_ms=0,
        worker_time_budget_s=30,
        trigger_timeout_s=60,
        cron_secret=None,
    )


@pytest.fixture
def store(clock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def optimistic_store(clock) -> InMemoryJobStore:
    """Store without a single-statement claim, forcing the optimistic path."""
    return InMemoryJobStore(atomic_claim=False, clock=clock)


@pytest.fixture
def ideas() -> InMemoryIdeaStore:
    return InMemoryIdeaStore()


@pytest.fixture
def service(store, test_settings, clock) -> JobService:
    return JobService(store, test_settings, clock=clock)


@pytest.fixture
def job_system(test_settings, store, ideas, clock):
    """Job system with every collaborator left unconfigured."""
    return build_job_system(test_settings, store, ideas, clock=clock)


def make_job(
    job_type: str = "news_scan",
    status: JobStatus = JobStatus.PENDING,
    now: datetime | None = None,
    **overrides,
) -> JobRecord:
    """Job record for tests that write straight to a store."""
    now = now or datetime(2026, 3, 2, 7, 0, tzinfo=UTC)
    values = {
        "id": uuid4(),
        "type": job_type,
        "status": status,
        "next_run_at": now,
        "created_at": now,
    }
    values.update(overrides)
    return JobRecord(**values)


@pytest.fixture
def job_factory():
    return make_job
