"""create job queue and activity log tables

Revision ID: 3b9d6c21e8a4
Revises:
Create Date: 2026-01-14 09:12:41.508113

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b9d6c21e8a4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "job_queue",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            server_default="{}",
            comment="Job-specific parameters",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Higher claims first",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="pending|processing|completed|failed|cancelled",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Successful claims so far",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=False,
            server_default="5",
            comment="Attempts before permanent failure",
        ),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column(
            "next_run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time the job may be claimed",
        ),
        sa.Column(
            "claimed_by",
            sa.Text,
            nullable=True,
            comment="Worker that made the latest claim",
        ),
        sa.Column("result", sa.JSON, nullable=True, comment="Handler result data"),
        sa.Column("correlation_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "parent_job_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("job_queue.id"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="valid_job_status",
        ),
    )

    # Claim order: highest priority, then earliest due
    op.execute(
        "CREATE INDEX idx_job_queue_pending "
        "ON job_queue (priority DESC, next_run_at ASC) "
        "WHERE status = 'pending'"
    )

    # Stuck job lookup
    op.create_index(
        "idx_job_queue_processing",
        "job_queue",
        ["started_at"],
        postgresql_where=sa.text("status = 'processing'"),
    )

    op.create_index(
        "idx_job_queue_correlation",
        "job_queue",
        ["correlation_id"],
        postgresql_where=sa.text("correlation_id IS NOT NULL"),
    )

    op.create_index("idx_job_queue_type_status", "job_queue", ["type", "status"])

    op.create_table(
        "job_activity_log",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.Text, nullable=False),
        sa.Column("entity_type", sa.Text, nullable=True),
        sa.Column("entity_id", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=False, server_default="{}"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_index(
        "idx_job_activity_log_type_created",
        "job_activity_log",
        ["type", "created_at"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("idx_job_activity_log_type_created", table_name="job_activity_log")
    op.drop_table("job_activity_log")

    op.drop_index("idx_job_queue_type_status", table_name="job_queue")
    op.drop_index("idx_job_queue_correlation", table_name="job_queue")
    op.drop_index("idx_job_queue_processing", table_name="job_queue")
    op.drop_index("idx_job_queue_pending", table_name="job_queue")
    op.drop_table("job_queue")
