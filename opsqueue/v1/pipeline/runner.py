"""
Checkpointed multi-stage pipeline runner.
"""

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from opsqueue.config.logging import get_logger
from opsqueue.v1.core.exceptions import CheckpointWriteError, ValidationError
from opsqueue.v1.pipeline.checkpoint import COMPLETED_STEP, Checkpoint

logger = get_logger(__name__)

# (context, outputs of completed stages) -> this stage's output
StageExecutor = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Any]]
CheckpointCallback = Callable[[Checkpoint], Awaitable[None]]


class StageObserver(Protocol):
    """Receives stage lifecycle events, e.g. to persist them per job."""

    async def stage_started(self, tag: str) -> None: ...

    async def stage_completed(self, tag: str, duration_ms: int) -> None: ...

    async def stage_failed(self, tag: str, error: Exception, duration_ms: int) -> None: ...


class NullStageObserver:
    async def stage_started(self, tag: str) -> None:
        return None

    async def stage_completed(self, tag: str, duration_ms: int) -> None:
        return None

    async def stage_failed(self, tag: str, error: Exception, duration_ms: int) -> None:
        return None


@dataclass(frozen=True)
class PipelineStage:
    tag: str
    execute: StageExecutor


@dataclass
class PipelineResult:
    checkpoint: Checkpoint
    executed_stages: list[str] = field(default_factory=list)
    resumed_from: str | None = None


class CheckpointedPipeline:
    """
    Runs stages in order, persisting a checkpoint after each one.

    A run given an existing checkpoint resumes at the stage after
    ``checkpoint.step``; earlier stages are never invoked again and their
    outputs are read from the checkpoint state.
    """

    def __init__(
        self,
        stages: Sequence[PipelineStage],
        monotonic: Callable[[], float] = time.monotonic,
    ):
        tags = [stage.tag for stage in stages]
        if not tags:
            raise ValueError("Pipeline needs at least one stage")
        if len(set(tags)) != len(tags):
            raise ValueError(f"Duplicate stage tags: {tags}")
        if COMPLETED_STEP in tags:
            raise ValueError(f"'{COMPLETED_STEP}' is reserved and cannot be a stage tag")
        self.stages = list(stages)
        self._monotonic = monotonic

    @property
    def stage_order(self) -> list[str]:
        return [stage.tag for stage in self.stages]

    def resume_index(self, checkpoint: Checkpoint) -> int:
        """Index of the first stage still to run."""
        if checkpoint.step is None:
            return 0
        if checkpoint.is_completed:
            return len(self.stages)
        try:
            return self.stage_order.index(checkpoint.step) + 1
        except ValueError:
            raise ValidationError(
                f"Checkpoint step is not a stage of this pipeline: {checkpoint.step}",
                details={"stages": self.stage_order},
            ) from None

    async def run(
        self,
        context: dict[str, Any],
        checkpoint: Checkpoint | None,
        on_checkpoint: CheckpointCallback,
        observer: StageObserver | None = None,
    ) -> PipelineResult:
        """
        Run the remaining stages.

        Args:
            context: Input shared by all stages
            checkpoint: Progress from an earlier attempt, or None
            on_checkpoint: Persists each new checkpoint; awaited before the
                next stage starts
            observer: Told when each stage starts, finishes or fails. A stage
                only counts as finished once its checkpoint is persisted.

        Raises:
            CheckpointWriteError: ``on_checkpoint`` failed; later stages do
                not run
        """
        observer = observer or NullStageObserver()
        checkpoint = checkpoint or Checkpoint()
        start = self.resume_index(checkpoint)
        resumed_from = checkpoint.step

        if resumed_from:
            logger.info("Resuming pipeline from checkpoint", step=resumed_from)

        executed: list[str] = []
        for stage in self.stages[start:]:
            logger.info("Pipeline stage started", stage=stage.tag)
            await observer.stage_started(stage.tag)
            started = self._monotonic()

            try:
                checkpoint = await self._run_stage(stage, context, checkpoint, on_checkpoint)
            except Exception as e:
                duration_ms = self._duration_ms(started)
                logger.warning(
                    "Pipeline stage failed",
                    stage=stage.tag,
                    duration_ms=duration_ms,
                    error=str(e) or e.__class__.__name__,
                )
                await observer.stage_failed(stage.tag, e, duration_ms)
                raise

            duration_ms = self._duration_ms(started)
            executed.append(stage.tag)
            logger.info(
                "Pipeline stage checkpointed", stage=stage.tag, duration_ms=duration_ms
            )
            await observer.stage_completed(stage.tag, duration_ms)

        return PipelineResult(
            checkpoint=checkpoint,
            executed_stages=executed,
            resumed_from=resumed_from,
        )

    async def _run_stage(
        self,
        stage: PipelineStage,
        context: dict[str, Any],
        checkpoint: Checkpoint,
        on_checkpoint: CheckpointCallback,
    ) -> Checkpoint:
        output = await stage.execute(context, dict(checkpoint.state))
        checkpoint = checkpoint.advance(stage.tag, output)

        try:
            await on_checkpoint(checkpoint)
        except CheckpointWriteError:
            raise
        except Exception as e:
            raise CheckpointWriteError(
                f"Failed to persist checkpoint after {stage.tag}",
                details={"stage": stage.tag, "error": str(e)},
            ) from e
        return checkpoint

    def _duration_ms(self, started: float) -> int:
        return int((self._monotonic() - started) * 1000)
