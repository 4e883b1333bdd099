"""
Job store protocol and the SQLAlchemy implementation.

Every mutation after insert is a single-row conditional update. A store
returns ``None`` from ``transition`` when no row matched, which callers treat
as a lost race or an illegal transition rather than an error.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsqueue.config.logging import get_logger
from opsqueue.infra.database import Database
from opsqueue.v1.core.exceptions import PersistenceError
from opsqueue.v1.infra.jobs.models import ActivityLog, Job, JobStatus, PipelineLog
from opsqueue.v1.infra.jobs.schemas import JobRecord, PipelineLogRecord

logger = get_logger(__name__)


class JobStore(Protocol):
    """Persistence operations the job service relies on."""

    @property
    def supports_atomic_claim(self) -> bool: ...

    async def insert(self, records: list[JobRecord]) -> list[UUID]:
        """Insert all records in one transaction, or none of them."""
        ...

    async def get(self, job_id: UUID) -> JobRecord | None: ...

    async def claim_atomic(self, worker_id: str, now: datetime) -> JobRecord | None:
        """Select and claim the best ready job in a single statement."""
        ...

    async def find_claim_candidate(self, now: datetime) -> JobRecord | None:
        """Highest priority, earliest due pending job whose next_run_at <= now."""
        ...

    async def transition(
        self,
        job_id: UUID,
        expected_status: JobStatus,
        values: dict[str, Any],
        expected_attempts: int | None = None,
    ) -> JobRecord | None: ...

    async def find_stuck(self, cutoff: datetime) -> list[JobRecord]: ...

    async def list_jobs(
        self,
        statuses: list[JobStatus] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]: ...

    async def list_failed(self, limit: int = 10) -> list[JobRecord]: ...

    async def count_by_status_and_type(
        self, since: datetime
    ) -> list[tuple[str, str, int]]: ...

    async def record_activity(
        self,
        activity_type: str,
        entity_type: str | None,
        entity_id: str | None,
        metadata: dict[str, Any],
    ) -> None: ...

    async def record_pipeline_log(self, entry: PipelineLogRecord) -> None: ...

    async def list_pipeline_logs(
        self, job_id: UUID, limit: int = 200
    ) -> list[PipelineLogRecord]:
        """Entries of one job, oldest first."""
        ...

    async def ping(self) -> bool: ...


def column_values(values: dict[str, Any]) -> dict[str, Any]:
    """Convert enum members to their stored string form."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in values.items()
    }


def _to_row(record: JobRecord) -> Job:
    return Job(**column_values(record.model_dump()))


@asynccontextmanager
async def store_session(
    database: Database, operation: str
) -> AsyncIterator[AsyncSession]:
    """Session for one store operation; SQLAlchemy errors become PersistenceError."""
    async with database.SessionLocal() as session:
        try:
            yield session
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("Store operation failed", operation=operation, error=str(e))
            raise PersistenceError(
                f"Store {operation} failed",
                details={"operation": operation, "error": str(e)},
            ) from e


class SqlJobStore:
    """Job store backed by SQLAlchemy async sessions (PostgreSQL via asyncpg)."""

    def __init__(self, database: Database):
        self.database = database

    @property
    def supports_atomic_claim(self) -> bool:
        # FOR UPDATE SKIP LOCKED inside a scalar subquery is PostgreSQL only
        return self.database.dialect_name == "postgresql"

    def _session(self, operation: str):
        return store_session(self.database, operation)

    async def insert(self, records: list[JobRecord]) -> list[UUID]:
        if not records:
            return []

        async with self._session("insert") as session:
            session.add_all([_to_row(record) for record in records])
            await session.commit()

        return [record.id for record in records]

    async def get(self, job_id: UUID) -> JobRecord | None:
        async with self._session("get") as session:
            result = await session.execute(select(Job).where(Job.id == job_id))
            job = result.scalar_one_or_none()
            return JobRecord.model_validate(job) if job else None

    async def claim_atomic(self, worker_id: str, now: datetime) -> JobRecord | None:
        candidate_id = (
            select(Job.id)
            .where(
                and_(Job.status == JobStatus.PENDING.value, Job.next_run_at <= now)
            )
            .order_by(Job.priority.desc(), Job.next_run_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(Job)
            .where(and_(Job.id == candidate_id, Job.status == JobStatus.PENDING.value))
            .values(
                status=JobStatus.PROCESSING.value,
                started_at=now,
                attempts=Job.attempts + 1,
                claimed_by=worker_id,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._session("claim_atomic") as session:
            result = await session.execute(stmt)
            job = result.scalar_one_or_none()
            await session.commit()
            return JobRecord.model_validate(job) if job else None

    async def find_claim_candidate(self, now: datetime) -> JobRecord | None:
        query = (
            select(Job)
            .where(
                and_(Job.status == JobStatus.PENDING.value, Job.next_run_at <= now)
            )
            .order_by(Job.priority.desc(), Job.next_run_at.asc())
            .limit(1)
        )

        async with self._session("find_claim_candidate") as session:
            result = await session.execute(query)
            job = result.scalar_one_or_none()
            return JobRecord.model_validate(job) if job else None

    async def transition(
        self,
        job_id: UUID,
        expected_status: JobStatus,
        values: dict[str, Any],
        expected_attempts: int | None = None,
    ) -> JobRecord | None:
        conditions = [Job.id == job_id, Job.status == expected_status.value]
        if expected_attempts is not None:
            conditions.append(Job.attempts == expected_attempts)

        stmt = (
            update(Job)
            .where(and_(*conditions))
            .values(**column_values(values))
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._session("transition") as session:
            result = await session.execute(stmt)
            job = result.scalar_one_or_none()
            await session.commit()
            return JobRecord.model_validate(job) if job else None

    async def find_stuck(self, cutoff: datetime) -> list[JobRecord]:
        query = select(Job).where(
            and_(
                Job.status == JobStatus.PROCESSING.value,
                Job.started_at < cutoff,
            )
        )

        async with self._session("find_stuck") as session:
            result = await session.execute(query)
            return [JobRecord.model_validate(job) for job in result.scalars().all()]

    async def list_jobs(
        self,
        statuses: list[JobStatus] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        base_query = select(Job)

        if statuses:
            base_query = base_query.where(Job.status.in_([s.value for s in statuses]))

        if job_type:
            base_query = base_query.where(Job.type == job_type)

        async with self._session("list_jobs") as session:
            count_query = select(func.count()).select_from(base_query.subquery())
            total = (await session.execute(count_query)).scalar() or 0

            jobs_query = (
                base_query.order_by(Job.created_at.desc()).offset(offset).limit(limit)
            )
            result = await session.execute(jobs_query)
            jobs = [JobRecord.model_validate(job) for job in result.scalars().all()]

        return jobs, total

    async def list_failed(self, limit: int = 10) -> list[JobRecord]:
        query = (
            select(Job)
            .where(Job.status == JobStatus.FAILED.value)
            .order_by(Job.completed_at.desc())
            .limit(limit)
        )

        async with self._session("list_failed") as session:
            result = await session.execute(query)
            return [JobRecord.model_validate(job) for job in result.scalars().all()]

    async def count_by_status_and_type(
        self, since: datetime
    ) -> list[tuple[str, str, int]]:
        query = (
            select(Job.status, Job.type, func.count(Job.id))
            .where(Job.created_at >= since)
            .group_by(Job.status, Job.type)
        )

        async with self._session("count_by_status_and_type") as session:
            result = await session.execute(query)
            return [(status, job_type, count) for status, job_type, count in result.all()]

    async def record_activity(
        self,
        activity_type: str,
        entity_type: str | None,
        entity_id: str | None,
        metadata: dict[str, Any],
    ) -> None:
        async with self._session("record_activity") as session:
            session.add(
                ActivityLog(
                    type=activity_type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    meta=metadata,
                )
            )
            await session.commit()

    async def record_pipeline_log(self, entry: PipelineLogRecord) -> None:
        async with self._session("record_pipeline_log") as session:
            session.add(PipelineLog(**column_values(entry.model_dump())))
            await session.commit()

    async def list_pipeline_logs(
        self, job_id: UUID, limit: int = 200
    ) -> list[PipelineLogRecord]:
        query = (
            select(PipelineLog)
            .where(PipelineLog.job_id == job_id)
            .order_by(PipelineLog.created_at.asc())
            .limit(limit)
        )

        async with self._session("list_pipeline_logs") as session:
            result = await session.execute(query)
            return [
                PipelineLogRecord.model_validate(row) for row in result.scalars().all()
            ]

    async def ping(self) -> bool:
        async with self._session("ping") as session:
            await session.execute(select(1))
        return True
