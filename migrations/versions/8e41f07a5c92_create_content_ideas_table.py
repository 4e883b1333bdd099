"""create content ideas table for checkpointed pipeline

Revision ID: 8e41f07a5c92
Revises: 3b9d6c21e8a4
Create Date: 2026-01-14 11:47:03.216904

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8e41f07a5c92"
down_revision: Union[str, Sequence[str], None] = "3b9d6c21e8a4"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "content_ideas",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("source_name", sa.Text, nullable=True),
        sa.Column("full_content", sa.Text, nullable=True),
        sa.Column("suggested_angle", sa.Text, nullable=True),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="selected",
            comment="selected|processing|completed",
        ),
        sa.Column(
            "pipeline_step",
            sa.Text,
            nullable=True,
            comment="Last completed pipeline stage",
        ),
        sa.Column(
            "pipeline_data",
            sa.JSON,
            nullable=True,
            comment="Versioned pipeline checkpoint",
        ),
        sa.Column("output", sa.JSON, nullable=True, comment="Final pipeline output"),
        sa.Column("selected_for_date", sa.Date, nullable=True),
        sa.Column("selection_rank", sa.Integer, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('selected', 'processing', 'completed')",
            name="valid_idea_status",
        ),
    )

    op.create_index(
        "idx_content_ideas_selection",
        "content_ideas",
        ["selected_for_date", "selection_rank"],
    )
    op.create_index("idx_content_ideas_status", "content_ideas", ["status"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("idx_content_ideas_status", table_name="content_ideas")
    op.drop_index("idx_content_ideas_selection", table_name="content_ideas")
    op.drop_table("content_ideas")
