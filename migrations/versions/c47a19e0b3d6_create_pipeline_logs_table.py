"""create pipeline logs table

Revision ID: c47a19e0b3d6
Revises: 8e41f07a5c92
Create Date: 2026-02-03 09:12:41.508117

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "c47a19e0b3d6"
down_revision: Union[str, Sequence[str], None] = "8e41f07a5c92"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "pipeline_logs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("job_queue.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("job_type", sa.Text, nullable=True),
        sa.Column(
            "level",
            sa.Text,
            nullable=False,
            server_default="info",
            comment="info|warn|error",
        ),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column(
            "step",
            sa.Text,
            nullable=True,
            comment="Pipeline stage the entry belongs to",
        ),
        sa.Column(
            "duration_ms",
            sa.Integer,
            nullable=True,
            comment="Time spent in the step",
        ),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_index(
        "idx_pipeline_logs_job_id", "pipeline_logs", ["job_id", "created_at"]
    )
    op.create_index(
        "idx_pipeline_logs_level_created", "pipeline_logs", ["level", "created_at"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("idx_pipeline_logs_level_created", table_name="pipeline_logs")
    op.drop_index("idx_pipeline_logs_job_id", table_name="pipeline_logs")
    op.drop_table("pipeline_logs")
