"""
Content idea model: the entity the content pipeline works on and checkpoints to.
"""

from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, TIMESTAMP, CheckConstraint, Date, Index, Integer, Text, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from opsqueue.infra.database import Base


class ContentStage(str, Enum):
    """Stages of the content pipeline, in execution order."""

    DRAFT = "stage1_draft"
    EDIT = "stage2_edit"
    POLISH = "stage3_polish"
    COMPLIANCE = "stage4_compliance"
    COMPLETED = "completed"

    @classmethod
    def pipeline_order(cls) -> list[str]:
        return [stage.value for stage in cls if stage is not cls.COMPLETED]


class IdeaStatus(str, Enum):
    SELECTED = "selected"
    PROCESSING = "processing"
    COMPLETED = "completed"


class ContentIdea(Base):
    """Selected idea turned into content by the checkpointed pipeline."""

    __tablename__ = "content_ideas"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    source_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    full_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_angle: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=IdeaStatus.SELECTED.value
    )
    pipeline_step: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last completed pipeline stage"
    )
    pipeline_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Versioned pipeline checkpoint"
    )
    output: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Final pipeline output"
    )

    selected_for_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    selection_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('selected', 'processing', 'completed')",
            name="valid_idea_status",
        ),
        Index("idx_content_ideas_selection", "selected_for_date", "selection_rank"),
        Index("idx_content_ideas_status", "status"),
    )
