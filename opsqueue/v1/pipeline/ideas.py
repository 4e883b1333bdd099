"""
Content idea persistence and stuck-job recovery for ideas.
"""

from datetime import UTC, date, datetime
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, select, update

from opsqueue.config.logging import get_logger
from opsqueue.infra.database import Database
from opsqueue.v1.infra.jobs.schemas import JobRecord
from opsqueue.v1.infra.jobs.store import column_values, store_session
from opsqueue.v1.pipeline.models import ContentIdea, IdeaStatus

logger = get_logger(__name__)


class IdeaRecord(BaseModel):
    """Snapshot of one content idea."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    source_name: str | None = None
    full_content: str | None = None
    suggested_angle: str | None = None
    status: IdeaStatus = IdeaStatus.SELECTED
    pipeline_step: str | None = None
    pipeline_data: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    selected_for_date: date | None = None
    selection_rank: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class IdeaStore(Protocol):
    async def add(self, record: IdeaRecord) -> UUID: ...

    async def get(self, idea_id: UUID) -> IdeaRecord | None: ...

    async def list_selected(self, for_date: date | None = None) -> list[IdeaRecord]:
        """Selected ideas ordered by selection rank, optionally for one date."""
        ...

    async def transition(
        self,
        idea_id: UUID,
        expected_statuses: set[IdeaStatus],
        values: dict[str, Any],
    ) -> IdeaRecord | None:
        """Conditional update; None when the idea is missing or in another status."""
        ...


class SqlIdeaStore:
    """Idea store backed by SQLAlchemy async sessions."""

    def __init__(self, database: Database):
        self.database = database

    async def add(self, record: IdeaRecord) -> UUID:
        async with store_session(self.database, "add_idea") as session:
            session.add(ContentIdea(**column_values(record.model_dump())))
            await session.commit()
        return record.id

    async def get(self, idea_id: UUID) -> IdeaRecord | None:
        async with store_session(self.database, "get_idea") as session:
            result = await session.execute(
                select(ContentIdea).where(ContentIdea.id == idea_id)
            )
            idea = result.scalar_one_or_none()
            return IdeaRecord.model_validate(idea) if idea else None

    async def list_selected(self, for_date: date | None = None) -> list[IdeaRecord]:
        query = select(ContentIdea).where(
            ContentIdea.status == IdeaStatus.SELECTED.value
        )
        if for_date:
            query = query.where(ContentIdea.selected_for_date == for_date)
        query = query.order_by(ContentIdea.selection_rank.asc())

        async with store_session(self.database, "list_selected_ideas") as session:
            result = await session.execute(query)
            return [IdeaRecord.model_validate(i) for i in result.scalars().all()]

    async def transition(
        self,
        idea_id: UUID,
        expected_statuses: set[IdeaStatus],
        values: dict[str, Any],
    ) -> IdeaRecord | None:
        values = {"updated_at": datetime.now(UTC), **values}
        stmt = (
            update(ContentIdea)
            .where(
                and_(
                    ContentIdea.id == idea_id,
                    ContentIdea.status.in_([s.value for s in expected_statuses]),
                )
            )
            .values(**column_values(values))
            .returning(ContentIdea)
            .execution_options(synchronize_session=False)
        )

        async with store_session(self.database, "transition_idea") as session:
            result = await session.execute(stmt)
            idea = result.scalar_one_or_none()
            await session.commit()
            return IdeaRecord.model_validate(idea) if idea else None


class InMemoryIdeaStore:
    """Dict-backed idea store for tests and local development."""

    def __init__(self):
        self._ideas: dict[UUID, IdeaRecord] = {}

    async def add(self, record: IdeaRecord) -> UUID:
        self._ideas[record.id] = record.model_copy(deep=True)
        return record.id

    async def get(self, idea_id: UUID) -> IdeaRecord | None:
        idea = self._ideas.get(idea_id)
        return idea.model_copy(deep=True) if idea else None

    async def list_selected(self, for_date: date | None = None) -> list[IdeaRecord]:
        ideas = [
            idea
            for idea in self._ideas.values()
            if idea.status == IdeaStatus.SELECTED
            and (for_date is None or idea.selected_for_date == for_date)
        ]
        ideas.sort(key=lambda idea: (idea.selection_rank is None, idea.selection_rank or 0))
        return [idea.model_copy(deep=True) for idea in ideas]

    async def transition(
        self,
        idea_id: UUID,
        expected_statuses: set[IdeaStatus],
        values: dict[str, Any],
    ) -> IdeaRecord | None:
        current = self._ideas.get(idea_id)
        if current is None or current.status not in expected_statuses:
            return None
        updated = current.model_copy(
            update={"updated_at": datetime.now(UTC), **values}, deep=True
        )
        self._ideas[idea_id] = updated
        return updated.model_copy(deep=True)


def idea_id_from_payload(payload: dict[str, Any]) -> UUID | None:
    raw = payload.get("idea_id")
    if not raw:
        return None
    try:
        return raw if isinstance(raw, UUID) else UUID(str(raw))
    except ValueError:
        return None


class StuckIdeaResetter:
    """
    Puts the idea behind a stuck pipeline job back to ``selected``.

    The checkpoint is kept, so the retried job resumes after the last
    completed stage.
    """

    def __init__(self, ideas: IdeaStore):
        self.ideas = ideas

    async def reset(self, job: JobRecord) -> int:
        idea_id = idea_id_from_payload(job.payload)
        if idea_id is None:
            return 0

        updated = await self.ideas.transition(
            idea_id, {IdeaStatus.PROCESSING}, {"status": IdeaStatus.SELECTED}
        )
        if updated is None:
            return 0

        logger.info(
            "Reset stuck idea to selected",
            idea_id=str(idea_id),
            job_id=str(job.id),
            pipeline_step=updated.pipeline_step,
        )
        return 1
