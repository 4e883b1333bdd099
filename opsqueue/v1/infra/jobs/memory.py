"""
In-memory job store for tests and local development.

Check-and-set steps run without awaiting in between, so on a single event loop
they behave like the conditional updates of the SQL store. Reads yield to the
loop before returning, which lets concurrent claimers interleave the way
separate database round trips would.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from opsqueue.v1.core.exceptions import PersistenceError
from opsqueue.v1.infra.jobs.models import JobStatus
from opsqueue.v1.infra.jobs.schemas import JobRecord, PipelineLogRecord


def _claim_order(record: JobRecord) -> tuple:
    return (-record.priority, record.next_run_at, record.created_at)


class InMemoryJobStore:
    """Dict-backed job store with the same semantics as ``SqlJobStore``."""

    def __init__(
        self,
        atomic_claim: bool = True,
        clock: Callable[[], datetime] | None = None,
    ):
        self._jobs: dict[UUID, JobRecord] = {}
        self._atomic_claim = atomic_claim
        self._clock = clock or (lambda: datetime.now(UTC))
        self.activity: list[dict[str, Any]] = []
        self.pipeline_logs: list[PipelineLogRecord] = []

    @property
    def supports_atomic_claim(self) -> bool:
        return self._atomic_claim

    async def insert(self, records: list[JobRecord]) -> list[UUID]:
        ids = [record.id for record in records]
        if len(set(ids)) != len(ids) or any(job_id in self._jobs for job_id in ids):
            raise PersistenceError(
                "Job store insert failed", details={"error": "duplicate job id"}
            )

        for record in records:
            self._jobs[record.id] = record.model_copy(deep=True)
        return ids

    async def get(self, job_id: UUID) -> JobRecord | None:
        record = self._jobs.get(job_id)
        return record.model_copy(deep=True) if record else None

    def _ready(self, now: datetime) -> list[JobRecord]:
        ready = [
            record
            for record in self._jobs.values()
            if record.status == JobStatus.PENDING and record.next_run_at <= now
        ]
        return sorted(ready, key=_claim_order)

    async def claim_atomic(self, worker_id: str, now: datetime) -> JobRecord | None:
        if not self._atomic_claim:
            raise NotImplementedError("Atomic claim is disabled for this store")

        ready = self._ready(now)
        if not ready:
            return None

        claimed = ready[0].model_copy(
            update={
                "status": JobStatus.PROCESSING,
                "started_at": now,
                "attempts": ready[0].attempts + 1,
                "claimed_by": worker_id,
            }
        )
        self._jobs[claimed.id] = claimed
        return claimed.model_copy(deep=True)

    async def find_claim_candidate(self, now: datetime) -> JobRecord | None:
        ready = self._ready(now)
        candidate = ready[0].model_copy(deep=True) if ready else None
        await asyncio.sleep(0)
        return candidate

    async def transition(
        self,
        job_id: UUID,
        expected_status: JobStatus,
        values: dict[str, Any],
        expected_attempts: int | None = None,
    ) -> JobRecord | None:
        current = self._jobs.get(job_id)
        if current is None or current.status != expected_status:
            return None
        if expected_attempts is not None and current.attempts != expected_attempts:
            return None

        updated = current.model_copy(update=values)
        self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def find_stuck(self, cutoff: datetime) -> list[JobRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._jobs.values()
            if record.status == JobStatus.PROCESSING
            and record.started_at is not None
            and record.started_at < cutoff
        ]

    async def list_jobs(
        self,
        statuses: list[JobStatus] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        matches = [
            record
            for record in self._jobs.values()
            if (not statuses or record.status in statuses)
            and (not job_type or record.type == job_type)
        ]
        matches.sort(key=lambda record: record.created_at, reverse=True)
        page = matches[offset : offset + limit]
        return [record.model_copy(deep=True) for record in page], len(matches)

    async def list_failed(self, limit: int = 10) -> list[JobRecord]:
        failed = [r for r in self._jobs.values() if r.status == JobStatus.FAILED]
        failed.sort(key=lambda r: r.completed_at or r.created_at, reverse=True)
        return [record.model_copy(deep=True) for record in failed[:limit]]

    async def count_by_status_and_type(
        self, since: datetime
    ) -> list[tuple[str, str, int]]:
        counts: dict[tuple[str, str], int] = {}
        for record in self._jobs.values():
            if record.created_at < since:
                continue
            key = (record.status.value, record.type)
            counts[key] = counts.get(key, 0) + 1
        return [(status, job_type, n) for (status, job_type), n in counts.items()]

    async def record_activity(
        self,
        activity_type: str,
        entity_type: str | None,
        entity_id: str | None,
        metadata: dict[str, Any],
    ) -> None:
        self.activity.append(
            {
                "id": uuid4(),
                "type": activity_type,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "metadata": dict(metadata),
                "created_at": self._clock(),
            }
        )

    async def record_pipeline_log(self, entry: PipelineLogRecord) -> None:
        self.pipeline_logs.append(entry.model_copy(deep=True))

    async def list_pipeline_logs(
        self, job_id: UUID, limit: int = 200
    ) -> list[PipelineLogRecord]:
        entries = [entry for entry in self.pipeline_logs if entry.job_id == job_id]
        entries.sort(key=lambda entry: entry.created_at)
        return [entry.model_copy(deep=True) for entry in entries[:limit]]

    async def ping(self) -> bool:
        return True
