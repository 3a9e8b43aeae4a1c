"""
Claim protocol: moving claimable jobs to ``running`` with compare-and-set.

Runner invocations are stateless and may overlap, so ownership is decided in
the database. Candidates are read first, then flipped with one conditional
``UPDATE ... WHERE id IN (...) AND status = <observed> RETURNING id``. A runner
owns exactly the rows its RETURNING clause yields; rows another runner flipped
in between simply do not come back.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.logging import get_logger
from api.v1.infra.jobs.models import Job, JobStatus

logger = get_logger(__name__)


def _claim_values(now: datetime) -> dict:
    return {
        "status": JobStatus.RUNNING.value,
        "attempts": Job.attempts + 1,
        "progress": 0,
        "phase": None,
        "phase_progress": 0,
        "next_retry_at": None,
        "started_at": now,
        "updated_at": now,
        "finished_at": None,
        "duration_ms": None,
    }


def _supports_skip_locked(session: AsyncSession) -> bool:
    return session.get_bind().dialect.name == "postgresql"


async def _claim_ready(
    session: AsyncSession, limit: int, now: datetime
) -> list[UUID]:
    """Claim pending jobs and retrying jobs whose backoff has elapsed."""
    query = (
        select(Job.id, Job.status)
        .where(
            or_(
                Job.status == JobStatus.PENDING.value,
                and_(
                    Job.status == JobStatus.RETRYING.value,
                    or_(Job.next_retry_at.is_(None), Job.next_retry_at <= now),
                ),
            )
        )
        .order_by(Job.priority.desc(), Job.created_at.asc())
        .limit(limit)
    )
    if _supports_skip_locked(session):
        query = query.with_for_update(skip_locked=True)

    candidates = (await session.execute(query)).all()
    if not candidates:
        return []

    by_status: dict[str, list[UUID]] = {}
    for job_id, status in candidates:
        by_status.setdefault(status, []).append(job_id)

    owned: list[UUID] = []
    for observed_status, job_ids in by_status.items():
        result = await session.execute(
            update(Job)
            .where(Job.id.in_(job_ids), Job.status == observed_status)
            .values(**_claim_values(now))
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        owned.extend(result.scalars().all())

    return owned


async def _claim_stale(
    session: AsyncSession,
    limit: int,
    stale_after_s: int,
    max_attempts: int,
    now: datetime,
) -> list[UUID]:
    """Re-claim running jobs whose runner stopped writing heartbeats."""
    cutoff = now - timedelta(seconds=stale_after_s)
    query = (
        select(Job.id, Job.updated_at)
        .where(
            Job.status == JobStatus.RUNNING.value,
            Job.updated_at < cutoff,
            Job.attempts < max_attempts,
        )
        .order_by(Job.updated_at.asc())
        .limit(limit)
    )
    if _supports_skip_locked(session):
        query = query.with_for_update(skip_locked=True)

    candidates = (await session.execute(query)).all()

    owned: list[UUID] = []
    for job_id, observed_updated_at in candidates:
        # The old heartbeat is part of the condition, so only one runner wins
        result = await session.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.RUNNING.value,
                Job.updated_at == observed_updated_at,
            )
            .values(**_claim_values(now))
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        owned.extend(result.scalars().all())

    if owned:
        logger.warning(
            "jobs.stale_reclaimed",
            job_ids=[str(job_id) for job_id in owned],
            stale_after_s=stale_after_s,
        )
    return owned


async def claim_jobs(
    session: AsyncSession,
    *,
    limit: int,
    stale_after_s: int,
    max_attempts: int,
    now: datetime | None = None,
) -> list[Job]:
    """
    Claim up to ``limit`` jobs for this runner invocation.

    Ready work (``pending`` and due ``retrying``) is preferred; stale
    ``running`` jobs are only recovered when nothing else was claimable.
    Claimed jobs come back with ``attempts`` already incremented and their
    progress reset for the new episode.
    """
    if limit <= 0:
        return []

    now = now or datetime.now(UTC)

    owned = await _claim_ready(session, limit, now)
    if not owned:
        owned = await _claim_stale(session, limit, stale_after_s, max_attempts, now)

    await session.commit()

    if not owned:
        return []

    result = await session.execute(
        select(Job)
        .where(Job.id.in_(owned))
        .order_by(Job.priority.desc(), Job.created_at.asc())
        .execution_options(populate_existing=True)
    )
    jobs = list(result.scalars().all())

    logger.info(
        "jobs.claimed",
        job_count=len(jobs),
        job_ids=[str(job.id) for job in jobs],
    )
    return jobs
