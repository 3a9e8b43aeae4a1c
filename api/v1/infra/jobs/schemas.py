"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.v1.infra.jobs.kinds import JobType


class JobSubmitRequest(BaseModel):
    """Schema for submitting a job via API."""

    type: JobType = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    priority: int | None = Field(
        default=None, description="Priority (higher runs first); type default if unset"
    )
    dedupe: bool = Field(
        default=True, description="Return an existing identical job instead of queueing"
    )
    total: int | None = Field(default=None, ge=0, description="Number of units")
    label: str | None = Field(default=None, max_length=200, description="Description")


class JobSubmitResponse(BaseModel):
    """Schema for job submission response."""

    job_id: UUID
    reused: bool = Field(default=False, description="Whether an existing job was returned")
    status: str
    progress: int
    artifact_path: str | None = None


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    label: str | None = None
    status: str
    priority: int
    payload: dict[str, Any]
    total: int | None = None

    # Progress
    progress: int
    phase: str | None = None
    phase_progress: int

    # Retry bookkeeping
    attempts: int
    next_retry_at: datetime | None = None
    dedupe_key: str | None = None

    # Outcome
    artifact_path: str | None = None
    artifact_type: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    # Metadata
    requested_by: str | None = None
    request_id: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None


class JobItemResponse(BaseModel):
    """Schema for one row of a job's progress table."""

    model_config = ConfigDict(from_attributes=True)

    seq: int
    target_label: str
    status: str
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int | None = None


class JobItemListResponse(BaseModel):
    job_id: UUID
    items: list[JobItemResponse]
    counts: dict[str, int]


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + retrying + running
    stale_running: int
    failed_last_hour: int
    avg_runtime_seconds: float | None = None


class JobActionRequest(BaseModel):
    """Schema for job actions (retry, cancel, pause, resume)."""

    job_ids: list[UUID] = Field(..., min_length=1, description="Job IDs to act upon")


class JobActionResponse(BaseModel):
    """Schema for job action responses."""

    success_ids: list[UUID]
    failed_ids: list[UUID]
    errors: dict[str, str]  # job_id -> error message


class ArtifactLinkResponse(BaseModel):
    job_id: UUID
    artifact_path: str
    artifact_type: str | None = None
    url: str
    expires_in_s: int


class RunnerJobOutcome(BaseModel):
    job_id: UUID
    type: str
    status: str
    error_code: str | None = None


class RunnerReport(BaseModel):
    """Summary of one runner invocation."""

    claimed: int
    outcomes: list[RunnerJobOutcome] = Field(default_factory=list)
    duration_ms: int


# Per-type payloads


class MissionOrderRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    match_id: str = Field(..., alias="matchId", min_length=1)
    official_id: str = Field(..., alias="officialId", min_length=1)

    @field_validator("match_id", "official_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class BulkPdfPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    orders: list[MissionOrderRef] = Field(default_factory=list)


class EmailRecipient(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: str
    name: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


class BulkEmailPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    recipients: list[EmailRecipient] = Field(default_factory=list)
    subject: str = Field(..., min_length=1)
    template: str = Field(..., min_length=1)
    html: bool = False
    variables: dict[str, Any] = Field(default_factory=dict)


class TableExportPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    dataset: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    columns: list[str] = Field(..., min_length=1)
    rows: list[dict[str, Any] | list[Any]] = Field(default_factory=list)


class MaintenancePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    tasks: list[str] = Field(default_factory=lambda: ["cleanup_jobs", "reap_stale"])
    dry_run: bool = False
