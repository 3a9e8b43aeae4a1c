"""
Job management API endpoints.

Submission, monitoring and control of background jobs, plus a trigger that
runs one runner invocation in-process.
"""

from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config.logging import get_logger
from api.config.settings import Settings, SettingsDep
from api.infra.database import get_session, get_sessionmaker
from api.infra.storage import ArtifactStorage, build_storage
from api.v1.core.exceptions import LeagueOpsException, create_success_response
from api.v1.core.registries import job_registry
from api.v1.infra.jobs.items import count_items_by_status
from api.v1.infra.jobs.kinds import JobType
from api.v1.infra.jobs.models import JobItemStatus, JobStatus
from api.v1.infra.jobs.schemas import (
    JobActionRequest,
    JobActionResponse,
    JobItemListResponse,
    JobItemResponse,
    JobListResponse,
    JobResponse,
    JobSubmitRequest,
)
from api.v1.infra.jobs.service import JobService
from api.v1.infra.jobs.worker import JobRunner, get_runner

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_storage(settings: Settings = SettingsDep) -> ArtifactStorage:
    return build_storage(settings)


def get_job_runner(
    settings: Settings = SettingsDep,
    sessionmaker: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
) -> JobRunner:
    return get_runner(settings, sessionmaker, job_registry)


@router.post("", response_model=dict)
async def submit_job(
    job_request: JobSubmitRequest,
    request: Request,
    requested_by: str | None = Header(default=None, alias="X-Requested-By"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Submit a background job, reusing an identical one when deduplicating."""

    job_service = JobService(settings)
    request_id = getattr(request.state, "request_id", None)
    result = await job_service.submit_job(
        session, job_request, requested_by=requested_by, request_id=request_id
    )

    logger.info(
        "Job submitted via API",
        job_id=str(result.job_id),
        type=job_request.type.value,
        reused=result.reused,
    )

    return create_success_response(
        data=result.model_dump(mode="json"), request_id=request_id
    )


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    type: JobType | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""

    job_service = JobService(settings)
    jobs, total = await job_service.list_jobs(
        session,
        statuses=[s.value for s in status] if status else None,
        job_type=type.value if type else None,
        limit=limit,
        offset=offset,
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats", response_model=dict)
async def get_job_stats(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get job statistics."""

    job_service = JobService(settings)
    stats = await job_service.get_job_stats(session)

    return create_success_response(data=stats.model_dump())


@router.post("/run", response_model=dict)
async def run_jobs(runner: JobRunner = Depends(get_job_runner)) -> dict[str, Any]:
    """Run one runner invocation: claim a batch and process it."""

    report = await runner.run_once()

    return create_success_response(data=report.model_dump(mode="json"))


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job_service = JobService(settings)
    job = await job_service.get_job_or_404(session, job_id)

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.get("/{job_id}/items", response_model=dict)
async def list_job_items(
    job_id: UUID,
    status: JobItemStatus | None = Query(default=None, description="Filter by status"),
    limit: int = Query(default=500, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Per-item progress of a bulk job."""

    job_service = JobService(settings)
    await job_service.get_job_or_404(session, job_id)
    items = await job_service.list_items(
        session, job_id, status=status, limit=limit, offset=offset
    )

    response = JobItemListResponse(
        job_id=job_id,
        items=[JobItemResponse.model_validate(item) for item in items],
        counts=await count_items_by_status(session, job_id),
    )

    return create_success_response(data=response.model_dump(mode="json"))


@router.get("/{job_id}/artifact", response_model=dict)
async def get_job_artifact(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    """Short-lived signed URL for the job's artifact."""

    job_service = JobService(settings)
    link = await job_service.get_artifact_link(session, job_id, storage)

    return create_success_response(data=link.model_dump(mode="json"))


async def _apply_to_jobs(
    job_ids: list[UUID],
    action: Callable[[UUID], Awaitable[bool]],
    not_eligible: str,
) -> JobActionResponse:
    success_ids: list[UUID] = []
    failed_ids: list[UUID] = []
    errors: dict[str, str] = {}

    for job_id in job_ids:
        try:
            if await action(job_id):
                success_ids.append(job_id)
            else:
                failed_ids.append(job_id)
                errors[str(job_id)] = not_eligible
        except LeagueOpsException as e:
            failed_ids.append(job_id)
            errors[str(job_id)] = e.message

    return JobActionResponse(
        success_ids=success_ids, failed_ids=failed_ids, errors=errors
    )


@router.post("/retry", response_model=dict)
async def retry_jobs(
    request: JobActionRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Retry failed or cancelled jobs from scratch."""

    job_service = JobService(settings)
    response = await _apply_to_jobs(
        request.job_ids,
        lambda job_id: job_service.retry_job(session, job_id),
        "Job not found or not eligible for retry",
    )

    logger.info(
        "Batch job retry via API",
        success_count=len(response.success_ids),
        failed_count=len(response.failed_ids),
    )

    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/cancel", response_model=dict)
async def cancel_jobs(
    request: JobActionRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Cancel jobs; running jobs stop at their next phase boundary."""

    job_service = JobService(settings)
    response = await _apply_to_jobs(
        request.job_ids,
        lambda job_id: job_service.cancel_job(session, job_id),
        "Job not found or not eligible for cancellation",
    )

    logger.info(
        "Batch job cancel via API",
        success_count=len(response.success_ids),
        failed_count=len(response.failed_ids),
    )

    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/pause", response_model=dict)
async def pause_jobs(
    request: JobActionRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Pause pending or retrying jobs."""

    job_service = JobService(settings)
    response = await _apply_to_jobs(
        request.job_ids,
        lambda job_id: job_service.pause_job(session, job_id),
        "Job not found or not eligible for pause",
    )

    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/resume", response_model=dict)
async def resume_jobs(
    request: JobActionRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Resume paused jobs."""

    job_service = JobService(settings)
    response = await _apply_to_jobs(
        request.job_ids,
        lambda job_id: job_service.resume_job(session, job_id),
        "Job not found or not eligible for resume",
    )

    return create_success_response(data=response.model_dump(mode="json"))
