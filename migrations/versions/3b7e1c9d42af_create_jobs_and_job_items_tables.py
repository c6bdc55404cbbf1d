"""create jobs and job_items tables

Revision ID: 3b7e1c9d42af
Revises:
Create Date: 2026-10-17 09:12:40.118305

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e1c9d42af"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Text, nullable=False, comment="Tenant owning the job"),
        sa.Column(
            "project_id",
            sa.Integer,
            nullable=True,
            comment="Owning project; NULL means global scope",
        ),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="queued",
            comment="Job status: queued|running|completed|failed|canceled",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Higher is more urgent",
        ),
        sa.Column("scope", sa.Text, nullable=False, server_default="project"),
        sa.Column("payload", sa.JSON, nullable=True, comment="Handler-specific parameters"),
        # Progress
        sa.Column("progress_done", sa.Integer, nullable=True),
        sa.Column("progress_total", sa.Integer, nullable=True),
        # Retry bookkeeping
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=True),
        # Worker coordination fields
        sa.Column(
            "claimed_by", sa.Text, nullable=True, comment="Worker holding the claim"
        ),
        sa.Column(
            "heartbeat_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Last worker heartbeat",
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Errors
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("last_error_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Timestamps
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
        # Constraints
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed', 'canceled')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint(
            "scope IN ('project', 'photo_set', 'global')", name="jobs_scope_check"
        ),
    )

    # Claim order is priority DESC, created_at ASC among queued jobs
    op.create_index("ix_jobs_claim", "jobs", ["status", "priority", "created_at"])
    op.create_index("ix_jobs_project_status", "jobs", ["project_id", "status"])
    op.create_index("ix_jobs_heartbeat_at", "jobs", ["heartbeat_at"])

    op.create_table(
        "job_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Text, nullable=False),
        sa.Column(
            "job_id",
            sa.Integer,
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("photo_id", sa.Integer, nullable=True),
        sa.Column("filename", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("message", sa.Text, nullable=True),
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
            "status IN ('pending', 'running', 'done', 'skipped', 'failed')",
            name="job_items_status_check",
        ),
        sa.CheckConstraint(
            "photo_id IS NOT NULL OR filename IS NOT NULL",
            name="job_items_subject_check",
        ),
    )
    op.create_index("ix_job_items_job_status", "job_items", ["job_id", "status"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_job_items_job_status", table_name="job_items")
    op.drop_table("job_items")
    op.drop_index("ix_jobs_heartbeat_at", table_name="jobs")
    op.drop_index("ix_jobs_project_status", table_name="jobs")
    op.drop_index("ix_jobs_claim", table_name="jobs")
    op.drop_table("jobs")
