"""
Versioned pipeline checkpoints.

A checkpoint lives on the entity a pipeline works on and records the last
completed stage plus every completed stage's output::

    {"version": 2, "step": "stage2_edit", "state": {"stage1_draft": {...}, ...}}

Version 1 checkpoints were flat dicts keyed by stage tag, optionally with a
``completed`` flag. They are migrated on load.
"""

from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field

from opsqueue.v1.core.exceptions import CheckpointVersionError

CHECKPOINT_VERSION = 2
COMPLETED_STEP = "completed"


class Checkpoint(BaseModel):
    """Resumable pipeline progress."""

    version: int = CHECKPOINT_VERSION
    step: str | None = Field(default=None, description="Last completed stage")
    state: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.step is None and not self.state

    @property
    def is_completed(self) -> bool:
        return self.step == COMPLETED_STEP

    def advance(self, step: str, output: Any) -> "Checkpoint":
        """New checkpoint with ``step`` completed and its output recorded."""
        return Checkpoint(step=step, state={**self.state, step: output})

    def archive(self) -> "Checkpoint":
        """Copy marked as fully completed, keeping all stage outputs."""
        return Checkpoint(step=COMPLETED_STEP, state=dict(self.state))


def _migrate_v1(raw: dict[str, Any], stage_order: Sequence[str]) -> Checkpoint:
    state = {tag: raw[tag] for tag in stage_order if tag in raw}
    if raw.get(COMPLETED_STEP):
        step = COMPLETED_STEP
    else:
        completed = [tag for tag in stage_order if tag in state]
        step = completed[-1] if completed else None
    return Checkpoint(step=step, state=state)


def load_checkpoint(
    raw: dict[str, Any] | None, stage_order: Sequence[str]
) -> Checkpoint:
    """
    Parse stored checkpoint data, migrating older formats.

    Args:
        raw: Stored JSON (None or empty means no progress)
        stage_order: Stage tags in execution order, used to migrate v1 data

    Raises:
        CheckpointVersionError: The data uses a version newer than this code
            understands, or is not a checkpoint at all
    """
    if not raw:
        return Checkpoint()

    if not isinstance(raw, dict):
        raise CheckpointVersionError(
            "Checkpoint data is not an object",
            details={"type": type(raw).__name__},
        )

    version = raw.get("version")
    if version is None or version == 1:
        return _migrate_v1(raw, stage_order)

    if not isinstance(version, int) or version > CHECKPOINT_VERSION:
        raise CheckpointVersionError(
            f"Unsupported checkpoint version: {version}",
            details={"supported": CHECKPOINT_VERSION},
        )

    return Checkpoint.model_validate(raw)


def dump_checkpoint(checkpoint: Checkpoint) -> dict[str, Any]:
    return checkpoint.model_dump(mode="json")
