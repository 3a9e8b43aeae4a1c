"""
Job and job item models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from api.infra.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RETRYING = "retrying"


# Statuses under which a dedupe key is reserved
DEDUPE_STATUSES = (
    JobStatus.PENDING.value,
    JobStatus.RUNNING.value,
    JobStatus.COMPLETED.value,
    JobStatus.RETRYING.value,
    JobStatus.PAUSED.value,
)

TERMINAL_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)

_DEDUPE_WHERE = text(
    "dedupe_key IS NOT NULL AND status IN "
    "('pending', 'running', 'completed', 'retrying', 'paused')"
)


class JobItemStatus(str, Enum):
    """Status of one fan-out unit."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Job(Base):
    """
    A unit of asynchronous work tracked through its status lifecycle.

    The row is the only source of truth: runners coordinate exclusively
    through conditional updates on ``status`` and ``updated_at``.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(Text, nullable=False, comment="Job type identifier")
    label: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Human-readable description"
    )
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobStatus.PENDING.value
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=100, comment="Higher runs first"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Type-specific input and diagnostics"
    )
    total: Mapped[int | None] = mapped_column(
        Integer, nullable=True, comment="Number of units to process"
    )

    # Progress
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    phase: Mapped[str | None] = mapped_column(Text, nullable=True)
    phase_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retry bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Backoff deadline while retrying"
    )
    dedupe_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Outcome
    artifact_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifact_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Tracing
    requested_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    items: Mapped[list["JobItem"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="JobItem.seq",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', "
            "'cancelled', 'paused', 'retrying')",
            name="jobs_status_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="jobs_progress_check"),
        CheckConstraint(
            "phase_progress BETWEEN 0 AND 100", name="jobs_phase_progress_check"
        ),
        CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
        Index("ix_jobs_status_priority_created", "status", "priority", "created_at"),
        Index("ix_jobs_status_updated_at", "status", "updated_at"),
        Index("ix_jobs_type_status", "type", "status"),
        Index(
            "ix_jobs_type_dedupe_key_active",
            "type",
            "dedupe_key",
            unique=True,
            postgresql_where=_DEDUPE_WHERE,
            sqlite_where=_DEDUPE_WHERE,
        ),
    )


class JobItem(Base):
    """One addressable sub-unit of a bulk job, e.g. one email recipient."""

    __tablename__ = "job_items"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobItemStatus.PENDING.value
    )
    target: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    job: Mapped[Job] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("job_id", "seq", name="uq_job_items_job_id_seq"),
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'skipped')",
            name="job_items_status_check",
        ),
        Index("ix_job_items_job_id_status", "job_id", "status"),
    )

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def target_label(self) -> str:
        """Short description of the target for progress tables."""
        target = self.target or {}
        for key in ("email", "label", "name"):
            if target.get(key):
                return str(target[key])
        return ", ".join(f"{k}={v}" for k, v in sorted(target.items()))
