"""Tests for the checkpointed pipeline, the content pipeline handler and idea recovery."""

from datetime import timedelta
from uuid import uuid4

import pytest

from opsqueue.v1.core.exceptions import (
    CheckpointWriteError,
    PersistenceError,
    ValidationError,
)
from opsqueue.v1.infra.jobs.handlers import (
    ContentPipelineHandler,
    SelectDailyHandler,
    build_content_pipeline,
)
from opsqueue.v1.infra.jobs.models import JobStatus, JobType, PipelineLogLevel
from opsqueue.v1.infra.jobs.registry_init import build_job_system
from opsqueue.v1.pipeline.checkpoint import Checkpoint, dump_checkpoint
from opsqueue.v1.pipeline.ideas import IdeaRecord, StuckIdeaResetter
from opsqueue.v1.pipeline.logs import PipelineLogger
from opsqueue.v1.pipeline.models import ContentStage, IdeaStatus
from opsqueue.v1.pipeline.runner import CheckpointedPipeline, PipelineStage


class RecordingStages:
    """Stage executors that record calls and can fail once on demand."""

    def __init__(self, fail_on: str | None = None):
        self.calls: list[str] = []
        self.fail_on = fail_on

    def executor(self, tag: str):
        async def execute(context, state):
            self.calls.append(tag)
            if tag == self.fail_on:
                self.fail_on = None
                raise RuntimeError(f"{tag} model timeout")
            return {"text": f"{tag} of {context['title']}", "inputs": sorted(state)}

        return execute

    def executors(self) -> dict:
        return {tag: self.executor(tag) for tag in ContentStage.pipeline_order()}


def make_idea(**overrides) -> IdeaRecord:
    values = {
        "id": uuid4(),
        "title": "Rate limits explained",
        "source_name": "newsletter",
        "full_content": "Body text",
    }
    values.update(overrides)
    return IdeaRecord(**values)


def pipeline_job(job_factory, idea_id):
    return job_factory(
        JobType.PROCESS_PIPELINE.value,
        status=JobStatus.PROCESSING,
        payload={"idea_id": str(idea_id)},
        attempts=1,
    )


class TestCheckpointedPipeline:
    """Stage runner."""

    def test_rejects_bad_stage_lists(self):
        async def noop(context, state):
            return None

        with pytest.raises(ValueError):
            CheckpointedPipeline([])
        with pytest.raises(ValueError):
            CheckpointedPipeline([PipelineStage("a", noop), PipelineStage("a", noop)])
        with pytest.raises(ValueError):
            CheckpointedPipeline([PipelineStage("completed", noop)])

    async def test_runs_all_stages_and_checkpoints_each(self):
        stages = RecordingStages()
        pipeline = build_content_pipeline(stages.executors())
        saved = []

        async def on_checkpoint(checkpoint):
            saved.append(checkpoint.step)

        result = await pipeline.run({"title": "T"}, None, on_checkpoint)

        assert stages.calls == ContentStage.pipeline_order()
        assert saved == ContentStage.pipeline_order()
        assert result.executed_stages == ContentStage.pipeline_order()
        assert result.resumed_from is None
        # Later stages see earlier outputs
        assert result.checkpoint.state["stage3_polish"]["inputs"] == [
            "stage1_draft",
            "stage2_edit",
        ]

    async def test_resumes_after_checkpoint(self):
        stages = RecordingStages()
        pipeline = build_content_pipeline(stages.executors())
        checkpoint = (
            Checkpoint()
            .advance("stage1_draft", {"text": "d"})
            .advance("stage2_edit", {"text": "e"})
        )

        async def on_checkpoint(checkpoint):
            return None

        result = await pipeline.run({"title": "T"}, checkpoint, on_checkpoint)

        assert stages.calls == ["stage3_polish", "stage4_compliance"]
        assert result.resumed_from == "stage2_edit"
        assert result.checkpoint.state["stage1_draft"] == {"text": "d"}

    async def test_completed_checkpoint_runs_nothing(self):
        stages = RecordingStages()
        pipeline = build_content_pipeline(stages.executors())
        checkpoint = Checkpoint().advance("stage1_draft", {}).archive()

        async def on_checkpoint(checkpoint):
            return None

        result = await pipeline.run({"title": "T"}, checkpoint, on_checkpoint)

        assert stages.calls == []
        assert result.executed_stages == []

    async def test_unknown_checkpoint_step(self):
        pipeline = build_content_pipeline(RecordingStages().executors())

        async def on_checkpoint(checkpoint):
            return None

        with pytest.raises(ValidationError):
            await pipeline.run(
                {"title": "T"}, Checkpoint(step="stage9_publish"), on_checkpoint
            )

    async def test_checkpoint_write_failure_stops_pipeline(self):
        stages = RecordingStages()
        pipeline = build_content_pipeline(stages.executors())

        async def on_checkpoint(checkpoint):
            if checkpoint.step == "stage2_edit":
                raise OSError("disk full")

        with pytest.raises(CheckpointWriteError) as exc_info:
            await pipeline.run({"title": "T"}, None, on_checkpoint)

        assert stages.calls == ["stage1_draft", "stage2_edit"]
        assert exc_info.value.details["stage"] == "stage2_edit"


class TestContentPipelineHandler:
    """Idea processing with checkpoint persistence."""

    async def test_processes_idea_to_completion(self, ideas, job_factory):
        idea = make_idea()
        await ideas.add(idea)
        stages = RecordingStages()
        handler = ContentPipelineHandler(ideas, build_content_pipeline(stages.executors()))

        outcome = await handler.handle(pipeline_job(job_factory, idea.id))

        assert outcome.success is True
        assert outcome.data["executed_stages"] == ContentStage.pipeline_order()

        stored = await ideas.get(idea.id)
        assert stored.status == IdeaStatus.COMPLETED
        assert stored.pipeline_step == "completed"
        assert stored.pipeline_data["step"] == "completed"
        assert stored.output["text"] == "stage4_compliance of Rate limits explained"

    async def test_resume_after_crash(self, ideas, job_factory):
        idea = make_idea()
        await ideas.add(idea)
        stages = RecordingStages(fail_on="stage3_polish")
        handler = ContentPipelineHandler(ideas, build_content_pipeline(stages.executors()))

        with pytest.raises(RuntimeError):
            await handler.handle(pipeline_job(job_factory, idea.id))

        crashed = await ideas.get(idea.id)
        assert crashed.status == IdeaStatus.PROCESSING
        assert crashed.pipeline_step == "stage2_edit"

        stages.calls.clear()
        outcome = await handler.handle(pipeline_job(job_factory, idea.id))

        assert stages.calls == ["stage3_polish", "stage4_compliance"]
        assert outcome.data["resumed_from"] == "stage2_edit"
        assert (await ideas.get(idea.id)).status == IdeaStatus.COMPLETED

    async def test_resumes_from_v1_checkpoint(self, ideas, job_factory):
        idea = make_idea(pipeline_data={"stage1_draft": {"text": "legacy draft"}})
        await ideas.add(idea)
        stages = RecordingStages()
        handler = ContentPipelineHandler(ideas, build_content_pipeline(stages.executors()))

        await handler.handle(pipeline_job(job_factory, idea.id))

        assert stages.calls == ["stage2_edit", "stage3_polish", "stage4_compliance"]

    async def test_completed_idea_skipped(self, ideas, job_factory):
        idea = make_idea(status=IdeaStatus.COMPLETED)
        await ideas.add(idea)
        stages = RecordingStages()
        handler = ContentPipelineHandler(ideas, build_content_pipeline(stages.executors()))

        outcome = await handler.handle(pipeline_job(job_factory, idea.id))

        assert outcome.success is True
        assert outcome.data["reason"] == "already_completed"
        assert stages.calls == []

    async def test_missing_idea_skipped(self, ideas, job_factory):
        handler = ContentPipelineHandler(ideas, build_content_pipeline({}))

        outcome = await handler.handle(pipeline_job(job_factory, uuid4()))

        assert outcome.success is True
        assert outcome.data["reason"] == "idea_not_found"

    async def test_missing_idea_id(self, ideas, job_factory):
        handler = ContentPipelineHandler(ideas, build_content_pipeline({}))
        job = job_factory(JobType.PROCESS_PIPELINE.value, payload={})

        with pytest.raises(ValueError, match="idea_id is required"):
            await handler.handle(job)

    async def test_checkpoint_lost_when_idea_reset(self, ideas, job_factory):
        idea = make_idea()
        await ideas.add(idea)

        async def draft(context, state):
            # Another actor takes the idea back mid-run
            await ideas.transition(
                idea.id, {IdeaStatus.PROCESSING}, {"status": IdeaStatus.SELECTED}
            )
            return {"text": "draft"}

        handler = ContentPipelineHandler(
            ideas, build_content_pipeline({"stage1_draft": draft})
        )

        with pytest.raises(CheckpointWriteError):
            await handler.handle(pipeline_job(job_factory, idea.id))

    async def test_unconfigured_stage_fails(self, ideas, job_system, clock):
        idea = make_idea()
        await ideas.add(idea)
        job_id = await job_system.service.enqueue(
            JobType.PROCESS_PIPELINE, {"idea_id": str(idea.id)}
        )

        summary = await job_system.worker(60, "worker-test").run()

        assert summary.results[0].status == "retrying"
        assert "stage1_draft" in summary.results[0].error
        assert (await job_system.service.get_job(job_id)).status == JobStatus.PENDING


class TestSelectDailyHandler:
    """Idea selection and pipeline chaining."""

    async def test_chains_pipeline_jobs(self, ideas, service, clock):
        today = clock.now.date()
        first = make_idea(selected_for_date=today, selection_rank=1)
        second = make_idea(selected_for_date=today, selection_rank=2, title="Second")
        await ideas.add(second)
        await ideas.add(first)
        await ideas.add(make_idea(selected_for_date=today - timedelta(days=1)))

        selector_calls = []

        async def selector(payload):
            selector_calls.append(payload)
            return {"selected_count": 2, "source_breakdown": {"news": 2}}

        correlation_id = uuid4()
        parent_id = await service.enqueue(
            JobType.SELECT_DAILY, {"count": 2}
        )
        parent = await service.get_job(parent_id)
        parent = parent.model_copy(update={"correlation_id": correlation_id})

        outcome = await SelectDailyHandler(service, selector, ideas).handle(parent)

        assert selector_calls == [{"count": 2}]
        assert outcome.data["selected_count"] == 2
        assert outcome.data["pipeline_jobs_created"] == 2

        jobs, _ = await service.list_jobs(job_type="process_pipeline")
        by_idea = {job.payload["idea_id"]: job for job in jobs}
        assert by_idea[str(first.id)].priority == 5
        assert by_idea[str(second.id)].priority == 4
        assert all(job.parent_job_id == parent_id for job in jobs)
        assert all(job.correlation_id == correlation_id for job in jobs)

    async def test_no_selected_ideas(self, ideas, service):
        async def selector(payload):
            return {"selected_count": 0}

        job_id = await service.enqueue(JobType.SELECT_DAILY)
        job = await service.get_job(job_id)

        outcome = await SelectDailyHandler(service, selector, ideas).handle(job)

        assert outcome.data["pipeline_jobs_created"] == 0
        assert outcome.data["selected_count"] == 0


class TestStuckIdeaRecovery:
    """Reaper resets ideas behind stuck pipeline jobs."""

    async def test_resetter_restores_selected(self, ideas, job_factory):
        checkpoint = Checkpoint().advance("stage1_draft", {"text": "d"})
        idea = make_idea(
            status=IdeaStatus.PROCESSING,
            pipeline_step="stage1_draft",
            pipeline_data=dump_checkpoint(checkpoint),
        )
        await ideas.add(idea)

        reset = await StuckIdeaResetter(ideas).reset(pipeline_job(job_factory, idea.id))

        assert reset == 1
        stored = await ideas.get(idea.id)
        assert stored.status == IdeaStatus.SELECTED
        assert stored.pipeline_data["step"] == "stage1_draft"

    async def test_resetter_ignores_other_statuses(self, ideas, job_factory):
        idea = make_idea(status=IdeaStatus.COMPLETED)
        await ideas.add(idea)

        assert await StuckIdeaResetter(ideas).reset(pipeline_job(job_factory, idea.id)) == 0

    async def test_resetter_without_idea_id(self, ideas, job_factory):
        job = job_factory(JobType.PROCESS_PIPELINE.value, payload={"idea_id": "nope"})
        assert await StuckIdeaResetter(ideas).reset(job) == 0

    async def test_cleanup_resets_idea_and_resume_skips_done_stages(
        self, test_settings, store, ideas, clock
    ):
        stages = RecordingStages()
        system = build_job_system(
            test_settings, store, ideas, stage_executors=stages.executors(), clock=clock
        )
        checkpoint = (
            Checkpoint()
            .advance("stage1_draft", {"text": "d"})
            .advance("stage2_edit", {"text": "e"})
        )
        idea = make_idea(
            status=IdeaStatus.PROCESSING,
            pipeline_step="stage2_edit",
            pipeline_data=dump_checkpoint(checkpoint),
        )
        await ideas.add(idea)

        # A worker claimed the job and died after stage 2
        job_id = await system.service.enqueue(
            JobType.PROCESS_PIPELINE, {"idea_id": str(idea.id)}
        )
        await system.service.claim_next_job("crashed-worker")
        clock.advance(minutes=11)

        assert await system.service.cleanup_stuck_jobs() == 1
        assert (await ideas.get(idea.id)).status == IdeaStatus.SELECTED

        clock.advance(seconds=30)
        summary = await system.worker(60, "worker-test").run()

        assert summary.results[0].status == "completed"
        assert stages.calls == ["stage3_polish", "stage4_compliance"]
        assert (await system.service.get_job(job_id)).status == JobStatus.COMPLETED
        assert (await ideas.get(idea.id)).status == IdeaStatus.COMPLETED


class RecordingObserver:
    def __init__(self):
        self.events: list[tuple] = []

    async def stage_started(self, tag):
        self.events.append(("started", tag, None))

    async def stage_completed(self, tag, duration_ms):
        self.events.append(("completed", tag, duration_ms))

    async def stage_failed(self, tag, error, duration_ms):
        self.events.append(("failed", tag, duration_ms))


class BrokenLogSink:
    async def record_pipeline_log(self, entry):
        raise PersistenceError("Store record_pipeline_log failed")


class TestPipelineLogs:
    """Per-job stage events persisted alongside the job."""

    async def test_observer_sees_stage_events_with_durations(self):
        reads = iter([0.0, 0.25, 0.5, 0.75])

        async def draft(context, state):
            return {"text": "d"}

        async def edit(context, state):
            raise RuntimeError("edit model timeout")

        async def on_checkpoint(checkpoint):
            return None

        pipeline = CheckpointedPipeline(
            [PipelineStage("draft", draft), PipelineStage("edit", edit)],
            monotonic=lambda: next(reads),
        )
        observer = RecordingObserver()

        with pytest.raises(RuntimeError):
            await pipeline.run({"title": "T"}, None, on_checkpoint, observer)

        assert observer.events == [
            ("started", "draft", None),
            ("completed", "draft", 250),
            ("started", "edit", None),
            ("failed", "edit", 250),
        ]

    async def test_checkpoint_write_failure_is_a_stage_failure(self):
        pipeline = build_content_pipeline(RecordingStages().executors())
        observer = RecordingObserver()

        async def on_checkpoint(checkpoint):
            raise OSError("disk full")

        with pytest.raises(CheckpointWriteError):
            await pipeline.run({"title": "T"}, None, on_checkpoint, observer)

        assert [event[:2] for event in observer.events] == [
            ("started", "stage1_draft"),
            ("failed", "stage1_draft"),
        ]

    async def test_successful_run_is_logged_per_stage(
        self, ideas, store, clock, job_factory
    ):
        idea = make_idea()
        await ideas.add(idea)
        handler = ContentPipelineHandler(
            ideas,
            build_content_pipeline(RecordingStages().executors()),
            logs=store,
            clock=clock,
        )
        job = pipeline_job(job_factory, idea.id)

        await handler.handle(job)

        entries = await store.list_pipeline_logs(job.id)
        expected = []
        for tag in ContentStage.pipeline_order():
            expected += [f"Stage {tag} started", f"Stage {tag} completed"]
        assert [entry.message for entry in entries] == expected + ["Content created"]
        assert all(entry.level == PipelineLogLevel.INFO for entry in entries)
        assert all(entry.details["attempt"] == 1 for entry in entries)
        assert all(entry.job_type == "process_pipeline" for entry in entries)
        assert entries[1].duration_ms is not None
        assert entries[0].duration_ms is None
        assert entries[-1].step == "completed"
        assert entries[-1].created_at == clock.now

    async def test_failed_stage_and_resume_are_logged(
        self, ideas, store, clock, job_factory
    ):
        idea = make_idea()
        await ideas.add(idea)
        handler = ContentPipelineHandler(
            ideas,
            build_content_pipeline(
                RecordingStages(fail_on="stage3_polish").executors()
            ),
            logs=store,
            clock=clock,
        )
        job = pipeline_job(job_factory, idea.id)

        with pytest.raises(RuntimeError):
            await handler.handle(job)

        failure = (await store.list_pipeline_logs(job.id))[-1]
        assert failure.level == PipelineLogLevel.ERROR
        assert failure.step == "stage3_polish"
        assert failure.message == "stage3_polish model timeout"
        assert failure.details["error_type"] == "RuntimeError"
        assert failure.duration_ms is not None

        clock.advance(minutes=1)
        await handler.handle(job)

        retried = [
            entry
            for entry in await store.list_pipeline_logs(job.id)
            if entry.created_at == clock.now
        ]
        assert retried[0].message == "Resuming from checkpoint"
        assert retried[0].step == "stage2_edit"
        assert retried[1].message == "Stage stage3_polish started"

    async def test_log_write_failure_does_not_fail_job(self, ideas, clock, job_factory):
        idea = make_idea()
        await ideas.add(idea)
        handler = ContentPipelineHandler(
            ideas,
            build_content_pipeline(RecordingStages().executors()),
            logs=BrokenLogSink(),
            clock=clock,
        )

        outcome = await handler.handle(pipeline_job(job_factory, idea.id))

        assert outcome.success is True
        assert (await ideas.get(idea.id)).status == IdeaStatus.COMPLETED

    async def test_entries_listed_per_job_oldest_first(self, store, clock, job_factory):
        job = job_factory(JobType.PROCESS_PIPELINE.value, attempts=1)
        other = job_factory(JobType.PROCESS_PIPELINE.value, attempts=1)
        job_log = PipelineLogger(store, job, clock)

        await job_log.info("first", "stage1_draft")
        clock.advance(seconds=5)
        await PipelineLogger(store, other, clock).info("elsewhere")
        await job_log.info("second", "stage2_edit")

        entries = await store.list_pipeline_logs(job.id)
        assert [entry.message for entry in entries] == ["first", "second"]
        assert [entry.message for entry in await store.list_pipeline_logs(job.id, 1)] == [
            "first"
        ]

    async def test_job_system_persists_pipeline_logs(
        self, test_settings, store, ideas, clock
    ):
        system = build_job_system(
            test_settings,
            store,
            ideas,
            stage_executors=RecordingStages().executors(),
            clock=clock,
        )
        idea = make_idea()
        await ideas.add(idea)
        job_id = await system.service.enqueue(
            JobType.PROCESS_PIPELINE, {"idea_id": str(idea.id)}
        )

        await system.worker(60, "worker-test").run()

        entries = await system.service.get_pipeline_logs(job_id)
        assert entries[0].message == "Stage stage1_draft started"
        assert entries[-1].message == "Content created"
