"""
Named job batches enqueued together by a scheduler or an operator.

Every job of one batch shares a fresh correlation id so the whole run can be
traced afterwards.
"""

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from opsqueue.v1.infra.jobs.models import JobType
from opsqueue.v1.infra.jobs.schemas import EnqueueOptions, JobCreate


@dataclass(frozen=True)
class PresetJob:
    type: JobType
    priority: int
    payload: dict[str, Any] = field(default_factory=dict)


PRESETS: dict[str, list[PresetJob]] = {
    # Full daily run: gather, score, then pick the day's content
    "morning": [
        PresetJob(JobType.NEWS_SCAN, 10),
        PresetJob(JobType.EMAIL_SCAN, 10, {"sources": "all"}),
        PresetJob(JobType.ADS_SYNC, 9),
        PresetJob(JobType.SCORE_IDEAS, 8, {"limit": 50}),
        PresetJob(JobType.SELECT_DAILY, 7, {"count": 6}),
    ],
    "evening": [
        PresetJob(JobType.EMAIL_SCAN, 10),
        PresetJob(JobType.SCORE_IDEAS, 8, {"limit": 30}),
        PresetJob(JobType.SELECT_DAILY, 7, {"count": 2}),
    ],
}


def list_presets() -> list[str]:
    return sorted(PRESETS)


def build_preset_jobs(
    name: str, correlation_id: UUID, max_attempts: int | None = None
) -> list[JobCreate]:
    """Expand a preset into job create requests. Raises KeyError if unknown."""
    return [
        JobCreate(
            type=job.type,
            payload=dict(job.payload),
            options=EnqueueOptions(
                priority=job.priority,
                max_attempts=max_attempts,
                correlation_id=correlation_id,
            ),
        )
        for job in PRESETS[name]
    ]
