"""create jobs and job_items tables

Revision ID: 5c1d7e9a2b40
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1d7e9a2b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


DEDUPE_WHERE = (
    "dedupe_key IS NOT NULL AND status IN "
    "('pending', 'running', 'completed', 'retrying', 'paused')"
)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "label", sa.Text, nullable=True, comment="Human-readable description"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="pending|running|completed|failed|cancelled|paused|retrying",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="100",
            comment="Higher runs first",
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Type-specific input and diagnostics",
        ),
        sa.Column(
            "total", sa.Integer, nullable=True, comment="Number of units to process"
        ),
        # Progress
        sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
        sa.Column("phase", sa.Text, nullable=True),
        sa.Column("phase_progress", sa.Integer, nullable=False, server_default="0"),
        # Retry bookkeeping
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "next_retry_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Backoff deadline while retrying",
        ),
        sa.Column("dedupe_key", sa.Text, nullable=True),
        # Outcome
        sa.Column("artifact_path", sa.Text, nullable=True),
        sa.Column("artifact_type", sa.Text, nullable=True),
        sa.Column("error_code", sa.Text, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        # Tracing
        sa.Column("requested_by", sa.Text, nullable=True),
        sa.Column("request_id", sa.Text, nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', "
            "'cancelled', 'paused', 'retrying')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="jobs_progress_check"),
        sa.CheckConstraint(
            "phase_progress BETWEEN 0 AND 100", name="jobs_phase_progress_check"
        ),
        sa.CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
    )

    # Claim ordering and staleness scans
    op.create_index(
        "ix_jobs_status_priority_created",
        "jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index("ix_jobs_status_updated_at", "jobs", ["status", "updated_at"])
    op.create_index("ix_jobs_type_status", "jobs", ["type", "status"])

    # At most one active job per (type, dedupe_key)
    op.create_index(
        "ix_jobs_type_dedupe_key_active",
        "jobs",
        ["type", "dedupe_key"],
        unique=True,
        postgresql_where=sa.text(DEDUPE_WHERE),
        sqlite_where=sa.text(DEDUPE_WHERE),
    )

    op.create_table(
        "job_items",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id",
            sa.Uuid(),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("seq", sa.Integer, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("target", sa.JSON, nullable=False),
        sa.Column("error_code", sa.Text, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("job_id", "seq", name="uq_job_items_job_id_seq"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'skipped')",
            name="job_items_status_check",
        ),
    )
    op.create_index("ix_job_items_job_id_status", "job_items", ["job_id", "status"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_job_items_job_id_status", table_name="job_items")
    op.drop_table("job_items")
    op.drop_index("ix_jobs_type_dedupe_key_active", table_name="jobs")
    op.drop_index("ix_jobs_type_status", table_name="jobs")
    op.drop_index("ix_jobs_status_updated_at", table_name="jobs")
    op.drop_index("ix_jobs_status_priority_created", table_name="jobs")
    op.drop_table("jobs")
