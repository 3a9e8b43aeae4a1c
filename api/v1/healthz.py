from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.logging import get_logger
from api.config.settings import Settings, SettingsDep
from api.infra.database import get_session
from api.v1.core.exceptions import create_success_response
from api.v1.infra.jobs.models import Job, JobStatus

router = APIRouter()
logger = get_logger(__name__)


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue status."""

    queue_depth: int = 0
    running: int = 0
    retrying: int = 0
    stale_jobs_count: int = 0
    oldest_pending_age_seconds: int | None = None


class HealthResponse(BaseModel):
    """Health response with database and queue status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    queue: QueueHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database and job queue status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session, settings)
        except Exception as e:
            # Queue status is informational and never fails the health check
            logger.warning("Queue health check failed", error=str(e))

    health_data = HealthResponse(
        ok=overall_ok,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        queue=queue_health,
    )

    return create_success_response(data=health_data.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(
    session: AsyncSession, settings: Settings
) -> QueueHealth:
    """Count queued, running and stale jobs."""
    now = datetime.now(UTC)

    status_result = await session.execute(
        select(Job.status, func.count(Job.id))
        .where(
            Job.status.in_(
                [
                    JobStatus.PENDING.value,
                    JobStatus.RUNNING.value,
                    JobStatus.RETRYING.value,
                ]
            )
        )
        .group_by(Job.status)
    )
    by_status = dict(status_result.all())

    stale_cutoff = now - timedelta(seconds=settings.job_stale_after_s)
    stale_jobs_count = (
        await session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.RUNNING.value, Job.updated_at < stale_cutoff
            )
        )
    ).scalar() or 0

    oldest_pending = (
        await session.execute(
            select(func.min(Job.created_at)).where(
                Job.status == JobStatus.PENDING.value
            )
        )
    ).scalar()

    oldest_pending_age_seconds = None
    if oldest_pending:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=UTC)
        oldest_pending_age_seconds = int((now - oldest_pending).total_seconds())

    return QueueHealth(
        queue_depth=sum(by_status.values()),
        running=by_status.get(JobStatus.RUNNING.value, 0),
        retrying=by_status.get(JobStatus.RETRYING.value, 0),
        stale_jobs_count=stale_jobs_count,
        oldest_pending_age_seconds=oldest_pending_age_seconds,
    )
