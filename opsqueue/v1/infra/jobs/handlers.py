"""
Job handlers.

Handlers implement the JobHandler protocol and are registered per job type in
registry_init. Scanning, syncing, scoring and selection are delegated to
injected async collaborators; the content pipeline is run here with its
checkpoint stored on the idea.
"""

from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from opsqueue.config.logging import get_logger
from opsqueue.v1.core.exceptions import (
    CheckpointWriteError,
    CollaboratorNotConfiguredError,
    PersistenceError,
)
from opsqueue.v1.infra.jobs.models import JobType
from opsqueue.v1.infra.jobs.schemas import EnqueueOptions, JobCreate, JobOutcome, JobRecord
from opsqueue.v1.infra.jobs.service import JobService
from opsqueue.v1.pipeline.checkpoint import Checkpoint, dump_checkpoint, load_checkpoint
from opsqueue.v1.pipeline.ideas import IdeaRecord, IdeaStore, idea_id_from_payload
from opsqueue.v1.pipeline.logs import PipelineLogger, PipelineLogSink
from opsqueue.v1.pipeline.models import ContentStage, IdeaStatus
from opsqueue.v1.pipeline.runner import CheckpointedPipeline, PipelineStage, StageExecutor

logger = get_logger(__name__)

# (payload) -> result data
Collaborator = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

PIPELINE_BASE_PRIORITY = 5


def not_configured(name: str) -> Collaborator:
    """Collaborator that fails every call until a real one is wired in."""

    async def collaborator(payload: dict[str, Any]) -> dict[str, Any]:
        raise CollaboratorNotConfiguredError(
            f"No collaborator configured for {name}", details={"collaborator": name}
        )

    return collaborator


class CallableHandler:
    """
    Job handler that delegates to an async collaborator.

    Used for news_scan, email_scan, ads_sync and score_ideas. The
    collaborator's return value becomes the job result; its exceptions go
    through the normal retry path.
    """

    def __init__(self, job_type: JobType, collaborator: Collaborator):
        self.job_type = job_type
        self.collaborator = collaborator

    async def handle(self, job: JobRecord) -> JobOutcome:
        logger.info("Delegating job to collaborator", job_type=self.job_type.value)
        data = await self.collaborator(dict(job.payload))
        return JobOutcome.ok(data)


class SelectDailyHandler:
    """
    Job handler for daily idea selection.

    Payload expected:
    {
        "count": 6  # optional, ideas to select
    }

    After the selector runs, one process_pipeline job is chained per selected
    idea, ranked ideas first.
    """

    def __init__(
        self,
        service: JobService,
        selector: Collaborator,
        ideas: IdeaStore,
        clock: Callable[[], datetime] | None = None,
    ):
        self.service = service
        self.selector = selector
        self.ideas = ideas
        self.clock = clock or service.clock

    async def handle(self, job: JobRecord) -> JobOutcome:
        target_count = int(job.payload.get("count") or 6)
        logger.info("Selecting ideas", target_count=target_count)

        selection = await self.selector({**job.payload, "count": target_count})

        today = self.clock().astimezone(UTC).date()
        selected = await self.ideas.list_selected(today)

        pipeline_jobs = [
            JobCreate(
                type=JobType.PROCESS_PIPELINE,
                payload={"idea_id": str(idea.id), "title": idea.title},
                options=EnqueueOptions(
                    priority=PIPELINE_BASE_PRIORITY - index,
                    correlation_id=job.correlation_id,
                    parent_job_id=job.id,
                ),
            )
            for index, idea in enumerate(selected)
        ]

        data: dict[str, Any] = {
            "selected_count": selection.get("selected_count", len(selected)),
            "source_breakdown": selection.get("source_breakdown", {}),
            "pipeline_jobs_created": 0,
        }
        if not pipeline_jobs:
            return JobOutcome.ok(data)

        try:
            job_ids = await self.service.enqueue_batch(pipeline_jobs)
        except PersistenceError as e:
            # Selection already happened; report the chaining failure in the result
            logger.error("Error creating pipeline jobs", error=e.message)
            data["pipeline_error"] = e.message
            return JobOutcome.ok(data)

        logger.info(
            "Created pipeline jobs",
            count=len(job_ids),
            idea_titles=[idea.title for idea in selected],
        )
        data["pipeline_jobs_created"] = len(job_ids)
        data["pipeline_job_ids"] = [str(job_id) for job_id in job_ids]
        return JobOutcome.ok(data)


def build_content_pipeline(
    executors: Mapping[str, StageExecutor] | None = None,
) -> CheckpointedPipeline:
    """Content pipeline with one stage per ContentStage, in order."""
    executors = executors or {}
    return CheckpointedPipeline(
        [
            PipelineStage(tag, executors.get(tag) or _stage_not_configured(tag))
            for tag in ContentStage.pipeline_order()
        ]
    )


def _stage_not_configured(tag: str) -> StageExecutor:
    collaborator = not_configured(f"pipeline stage {tag}")

    async def execute(context: dict[str, Any], state: dict[str, Any]) -> Any:
        return await collaborator(context)

    return execute


def build_pipeline_context(idea: IdeaRecord) -> dict[str, Any]:
    lines = [f"TOPIC: {idea.title}", f"SOURCE: {idea.source_name or 'unknown'}"]
    if idea.full_content:
        lines.append(f"\nSOURCE CONTENT:\n{idea.full_content}")
    if idea.suggested_angle:
        lines.append(f"\nSUGGESTED ANGLE: {idea.suggested_angle}")

    return {
        "idea_id": str(idea.id),
        "title": idea.title,
        "content": "\n".join(lines),
        "focus_angle": idea.suggested_angle,
    }


class ContentPipelineHandler:
    """
    Job handler that turns one selected idea into content.

    Payload expected:
    {
        "idea_id": "uuid-string",
        "title": "idea title"  # informational
    }

    Progress is checkpointed on the idea after every stage, so a retried job
    resumes after the last completed stage instead of starting over. When a
    log sink is given, stage starts, finishes and failures are persisted per
    job as pipeline logs.
    """

    def __init__(
        self,
        ideas: IdeaStore,
        pipeline: CheckpointedPipeline,
        logs: PipelineLogSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.ideas = ideas
        self.pipeline = pipeline
        self.logs = logs
        self.clock = clock

    async def handle(self, job: JobRecord) -> JobOutcome:
        if not job.payload.get("idea_id"):
            raise ValueError("idea_id is required in payload")

        idea_id = idea_id_from_payload(job.payload)
        if idea_id is None:
            raise ValueError(f"Invalid idea_id format: {job.payload['idea_id']}")

        idea = await self.ideas.get(idea_id)
        if idea is None:
            logger.warning("Idea not found for pipeline", idea_id=str(idea_id))
            return JobOutcome.ok(
                {"status": "skipped", "reason": "idea_not_found", "idea_id": str(idea_id)}
            )

        if idea.status == IdeaStatus.COMPLETED:
            logger.info("Idea already completed", idea_id=str(idea_id))
            return JobOutcome.ok(
                {"status": "skipped", "reason": "already_completed", "idea_id": str(idea_id)}
            )

        checkpoint = load_checkpoint(idea.pipeline_data, self.pipeline.stage_order)

        marked = await self.ideas.transition(
            idea_id,
            {IdeaStatus.SELECTED, IdeaStatus.PROCESSING},
            {"status": IdeaStatus.PROCESSING},
        )
        if marked is None:
            return JobOutcome.fail(f"Idea {idea_id} cannot be processed in its current status")

        logger.info(
            "Processing idea",
            idea_id=str(idea_id),
            title=idea.title,
            has_checkpoint=not checkpoint.is_empty,
            checkpoint_step=checkpoint.step,
        )

        async def on_checkpoint(progress: Checkpoint) -> None:
            saved = await self.ideas.transition(
                idea_id,
                {IdeaStatus.PROCESSING},
                {
                    "pipeline_step": progress.step,
                    "pipeline_data": dump_checkpoint(progress),
                },
            )
            if saved is None:
                raise CheckpointWriteError(
                    "Idea is no longer processing",
                    details={"idea_id": str(idea_id), "step": progress.step},
                )

        pipeline_log = None
        if self.logs is not None:
            pipeline_log = PipelineLogger(self.logs, job, self.clock)
        if pipeline_log is not None and checkpoint.step:
            await pipeline_log.info("Resuming from checkpoint", checkpoint.step)

        result = await self.pipeline.run(
            build_pipeline_context(idea), checkpoint, on_checkpoint, pipeline_log
        )

        final_stage = self.pipeline.stage_order[-1]
        final_output = result.checkpoint.state.get(final_stage)
        output = final_output if isinstance(final_output, dict) else {"value": final_output}

        finalized = await self.ideas.transition(
            idea_id,
            {IdeaStatus.PROCESSING},
            {
                "status": IdeaStatus.COMPLETED,
                "pipeline_step": ContentStage.COMPLETED.value,
                "pipeline_data": dump_checkpoint(result.checkpoint.archive()),
                "output": output,
            },
        )
        if finalized is None:
            raise CheckpointWriteError(
                "Failed to finalize idea, it is no longer processing",
                details={"idea_id": str(idea_id)},
            )

        logger.info(
            "Content created successfully",
            idea_id=str(idea_id),
            executed_stages=result.executed_stages,
            resumed_from=result.resumed_from,
        )
        if pipeline_log is not None:
            await pipeline_log.info(
                "Content created",
                ContentStage.COMPLETED.value,
                executed_stages=result.executed_stages,
            )
        return JobOutcome.ok(
            {
                "idea_id": str(idea_id),
                "title": idea.title,
                "executed_stages": result.executed_stages,
                "resumed_from": result.resumed_from,
            }
        )
