"""Tests for the time-boxed job worker."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from opsqueue.v1.infra.jobs.models import ActivityType, JobStatus, JobType
from opsqueue.v1.infra.jobs.registry_init import build_job_system
from opsqueue.v1.infra.jobs.worker import JobWorker


class TickingClock:
    """Monotonic clock that moves forward a fixed step on every read."""

    def __init__(self, step: float):
        self.step = step
        self.value = 0.0

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


def build_system(test_settings, store, ideas, clock, **collaborators):
    return build_job_system(
        test_settings, store, ideas, collaborators=collaborators, clock=clock
    )


def build_worker(system, budget: float = 60, monotonic=None) -> JobWorker:
    kwargs = {"monotonic": monotonic} if monotonic else {}
    return JobWorker(system.service, system.handlers, budget, "worker-test", **kwargs)


class TestWorkerRun:
    """Processing loop."""

    async def test_processes_ready_jobs(self, test_settings, store, ideas, clock):
        scans = []

        async def news_scan(payload):
            scans.append(payload)
            return {"articles": 4}

        system = build_system(test_settings, store, ideas, clock, news_scan=news_scan)
        first = await system.service.enqueue(JobType.NEWS_SCAN, {"feed": "a"})
        second = await system.service.enqueue(JobType.NEWS_SCAN, {"feed": "b"})

        summary = await build_worker(system).run()

        assert summary.success is True
        assert summary.processed == 2
        assert [r.status for r in summary.results] == ["completed", "completed"]
        assert {r.job_id for r in summary.results} == {first, second}
        assert len(scans) == 2

        job = await system.service.get_job(first)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"articles": 4}
        assert job.claimed_by == "worker-test"

    async def test_empty_queue(self, job_system):
        summary = await build_worker(job_system).run()

        assert summary.success is True
        assert summary.processed == 0
        assert summary.cleaned == 0
        assert summary.worker_id == "worker-test"

    async def test_handler_exception_schedules_retry(
        self, test_settings, store, ideas, clock
    ):
        async def ads_sync(payload):
            raise RuntimeError("ads api returned 502")

        system = build_system(test_settings, store, ideas, clock, ads_sync=ads_sync)
        job_id = await system.service.enqueue(JobType.ADS_SYNC)

        summary = await build_worker(system).run()

        # A failed handler does not fail the run
        assert summary.success is True
        assert summary.results[0].status == "retrying"
        assert summary.results[0].error == "ads api returned 502"

        job = await system.service.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.last_error == "ads api returned 502"

    async def test_unconfigured_collaborator_retries(self, job_system):
        job_id = await job_system.service.enqueue(JobType.EMAIL_SCAN)

        summary = await build_worker(job_system).run()

        assert summary.results[0].status == "retrying"
        assert "email_scan" in summary.results[0].error
        assert (await job_system.service.get_job(job_id)).status == JobStatus.PENDING

    async def test_handler_failure_on_last_attempt(
        self, test_settings, store, ideas, clock
    ):
        async def score_ideas(payload):
            raise ValueError("scoring model missing")

        system = build_system(test_settings, store, ideas, clock, score_ideas=score_ideas)
        job_id = await system.service.enqueue(JobType.SCORE_IDEAS)
        for _ in range(4):
            await system.service.claim_next_job()
            await system.service.fail_job(job_id, "earlier failure")
            clock.advance(hours=1)

        summary = await build_worker(system).run()

        assert summary.results[0].status == "failed"
        job = await system.service.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 5
        assert job.last_error == "scoring model missing"

    async def test_unknown_type_fails_permanently(self, job_system, store, job_factory, clock):
        legacy = job_factory("legacy_digest", now=clock.now)
        await store.insert([legacy])

        summary = await build_worker(job_system).run()

        result = summary.results[0]
        assert result.status == "failed"
        assert result.error == "Unknown job type: legacy_digest"

        job = await store.get(legacy.id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert store.activity[-1]["type"] == ActivityType.JOB_FAILED_PERMANENTLY.value

    async def test_respects_time_budget(self, test_settings, store, ideas, clock):
        async def news_scan(payload):
            return {}

        system = build_system(test_settings, store, ideas, clock, news_scan=news_scan)
        for _ in range(3):
            await system.service.enqueue(JobType.NEWS_SCAN)

        summary = await build_worker(system, budget=15, monotonic=TickingClock(10)).run()

        assert summary.processed == 1
        _, pending = await system.service.list_jobs([JobStatus.PENDING])
        assert pending == 2


class TestWorkerReaper:
    """Stuck job cleanup at the end of every run."""

    async def test_reaper_runs_after_processing(self, job_system, clock):
        stuck = await job_system.service.enqueue(JobType.NEWS_SCAN)
        await job_system.service.claim_next_job("crashed-worker")
        clock.advance(minutes=15)

        summary = await build_worker(job_system).run()

        assert summary.cleaned == 1
        job = await job_system.service.get_job(stuck)
        assert job.status == JobStatus.PENDING
        assert "timed out" in job.last_error

    async def test_loop_error_still_reaps(self, job_system, monkeypatch):
        cleanup = AsyncMock(return_value=2)
        monkeypatch.setattr(
            job_system.service,
            "claim_next_job",
            AsyncMock(side_effect=RuntimeError("connection reset")),
        )
        monkeypatch.setattr(job_system.service, "cleanup_stuck_jobs", cleanup)

        summary = await build_worker(job_system).run()

        assert summary.success is False
        assert summary.error == "connection reset"
        assert summary.cleaned == 2
        cleanup.assert_awaited_once()

    async def test_reaper_error_reported(self, job_system, monkeypatch):
        monkeypatch.setattr(
            job_system.service,
            "cleanup_stuck_jobs",
            AsyncMock(side_effect=RuntimeError("store offline")),
        )

        summary = await build_worker(job_system).run()

        assert summary.success is False
        assert summary.error == "Stuck job cleanup failed: store offline"

    def test_partial_summary_when_aborted(self, job_system):
        worker = build_worker(job_system)

        summary = worker.partial_summary(aborted=True)

        assert summary.aborted is True
        assert summary.success is False
        assert summary.error == "Worker aborted before finishing"
        assert summary.processed == 0

    async def test_reap_runs_once_per_invocation(self, job_system, monkeypatch):
        cleanup = AsyncMock(return_value=1)
        monkeypatch.setattr(job_system.service, "cleanup_stuck_jobs", cleanup)
        worker = build_worker(job_system)

        await worker.run()

        assert await worker.reap() == 1
        cleanup.assert_awaited_once()


class TestWorkerInterruption:
    """Cancelled runs and claims settled by someone else."""

    async def test_cancelled_run_reports_in_flight_job(
        self, test_settings, store, ideas, clock
    ):
        async def news_scan(payload):
            await asyncio.sleep(5)
            return {}

        system = build_system(test_settings, store, ideas, clock, news_scan=news_scan)
        job_id = await system.service.enqueue(JobType.NEWS_SCAN)
        worker = build_worker(system)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(worker.run(), timeout=0.05)
        await worker.reap()
        summary = worker.partial_summary(aborted=True)

        assert summary.aborted is True
        assert summary.processed == 1
        assert summary.results[0].job_id == job_id
        assert summary.results[0].status == "aborted"
        assert summary.results[0].attempt == 1

        # The attempt stays claimed until the reaper times it out
        job = await system.service.get_job(job_id)
        assert job.status == JobStatus.PROCESSING

    async def test_reclaimed_job_is_not_settled(self, test_settings, store, ideas, clock):
        holder = {}

        async def ads_sync(payload):
            # Another invocation reaps this claim and picks the job up again
            clock.advance(minutes=15)
            await holder["service"].cleanup_stuck_jobs()
            clock.advance(hours=1)
            await holder["service"].claim_next_job("worker-other")
            raise RuntimeError("ads api returned 502")

        system = build_system(test_settings, store, ideas, clock, ads_sync=ads_sync)
        holder["service"] = system.service
        job_id = await system.service.enqueue(JobType.ADS_SYNC)

        summary = await build_worker(system).run()

        assert summary.results[0].status == "stale"
        job = await system.service.get_job(job_id)
        assert job.status == JobStatus.PROCESSING
        assert job.claimed_by == "worker-other"
        assert job.attempts == 2
