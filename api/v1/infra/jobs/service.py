"""
Job service for submitting and managing background jobs.
"""

import uuid
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, delete, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.logging import get_logger
from api.config.settings import Settings
from api.infra.storage import ArtifactStorage
from api.v1.core.exceptions import ConflictError, NotFoundError
from api.v1.infra.jobs.dedupe import compute_dedupe_key
from api.v1.infra.jobs.kinds import DEFAULT_LABELS, DEFAULT_PRIORITIES, DEFAULT_PRIORITY
from api.v1.infra.jobs.models import (
    DEDUPE_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobItem,
    JobItemStatus,
    JobStatus,
)
from api.v1.infra.jobs.schemas import (
    ArtifactLinkResponse,
    JobStatsResponse,
    JobSubmitRequest,
    JobSubmitResponse,
)

logger = get_logger(__name__)

QUEUED_STATUSES = (
    JobStatus.PENDING.value,
    JobStatus.RETRYING.value,
    JobStatus.RUNNING.value,
)


class JobService:
    """Service for managing background jobs."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def submit_job(
        self,
        session: AsyncSession,
        request: JobSubmitRequest,
        requested_by: str | None = None,
        request_id: str | None = None,
    ) -> JobSubmitResponse:
        """
        Submit a new job, returning an identical existing one when deduplicating.

        Args:
            session: Database session
            request: Job type, payload and submission options
            requested_by: Identifier of the submitter, kept for auditing
            request_id: Request ID for tracing

        Returns:
            Submission response with ``reused`` set when an existing job was returned
        """
        job_type = request.type.value
        dedupe_key = (
            compute_dedupe_key(job_type, request.payload) if request.dedupe else None
        )

        if dedupe_key:
            existing_job = await self._find_existing_job(session, job_type, dedupe_key)
            if existing_job:
                logger.info(
                    "job.deduplicated",
                    job_id=str(existing_job.id),
                    type=job_type,
                    status=existing_job.status,
                )
                return self._submit_response(existing_job, reused=True)

        job = Job(
            id=uuid.uuid4(),
            type=job_type,
            label=request.label or DEFAULT_LABELS.get(request.type),
            status=JobStatus.PENDING.value,
            priority=(
                request.priority
                if request.priority is not None
                else DEFAULT_PRIORITIES.get(request.type, DEFAULT_PRIORITY)
            ),
            payload=request.payload,
            total=request.total if request.total is not None else _infer_total(request),
            dedupe_key=dedupe_key,
            requested_by=requested_by,
            request_id=request_id,
        )

        try:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        except IntegrityError:
            await session.rollback()
            if not dedupe_key:
                raise
            # Lost the race against a concurrent identical submission
            existing_job = await self._find_existing_job(session, job_type, dedupe_key)
            if existing_job is None:
                raise
            logger.info(
                "job.deduplicated_after_race",
                job_id=str(existing_job.id),
                type=job_type,
            )
            return self._submit_response(existing_job, reused=True)

        logger.info(
            "job.submitted",
            job_id=str(job.id),
            type=job.type,
            priority=job.priority,
            total=job.total,
            dedupe_key=dedupe_key,
        )
        return self._submit_response(job, reused=False)

    @staticmethod
    def _submit_response(job: Job, reused: bool) -> JobSubmitResponse:
        return JobSubmitResponse(
            job_id=job.id,
            reused=reused,
            status=job.status,
            progress=job.progress,
            artifact_path=job.artifact_path,
        )

    async def _find_existing_job(
        self, session: AsyncSession, job_type: str, dedupe_key: str
    ) -> Job | None:
        """Find a job with the same dedupe key that still reserves it."""
        result = await session.execute(
            select(Job)
            .where(
                and_(
                    Job.type == job_type,
                    Job.dedupe_key == dedupe_key,
                    Job.status.in_(DEDUPE_STATUSES),
                )
            )
            .order_by(desc(Job.created_at))
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_job_by_id(self, session: AsyncSession, job_id: UUID) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_job_or_404(self, session: AsyncSession, job_id: UUID) -> Job:
        job = await self.get_job_by_id(session, job_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        return job

    async def list_jobs(
        self,
        session: AsyncSession,
        statuses: list[str] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first with the total number of matches."""
        base_query = select(Job)
        if statuses:
            base_query = base_query.where(Job.status.in_(statuses))
        if job_type:
            base_query = base_query.where(Job.type == job_type)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        result = await session.execute(
            base_query.order_by(desc(Job.created_at)).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_items(
        self,
        session: AsyncSession,
        job_id: UUID,
        status: JobItemStatus | None = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[JobItem]:
        query = select(JobItem).where(JobItem.job_id == job_id)
        if status:
            query = query.where(JobItem.status == status.value)
        result = await session.execute(
            query.order_by(JobItem.seq).offset(offset).limit(limit)
        )
        return list(result.scalars().all())

    async def get_job_stats(self, session: AsyncSession) -> JobStatsResponse:
        """Get job statistics."""
        now = datetime.now(UTC)

        total_jobs = (await session.execute(select(func.count(Job.id)))).scalar() or 0

        status_result = await session.execute(
            select(Job.status, func.count(Job.id)).group_by(Job.status)
        )
        by_status = dict(status_result.all())

        type_result = await session.execute(
            select(Job.type, func.count(Job.id)).group_by(Job.type)
        )
        by_type = dict(type_result.all())

        queue_depth = sum(by_status.get(status, 0) for status in QUEUED_STATUSES)

        stale_cutoff = now - timedelta(seconds=self.settings.job_stale_after_s)
        stale_running = (
            await session.execute(
                select(func.count(Job.id)).where(
                    Job.status == JobStatus.RUNNING.value,
                    Job.updated_at < stale_cutoff,
                )
            )
        ).scalar() or 0

        failed_last_hour = (
            await session.execute(
                select(func.count(Job.id)).where(
                    Job.status == JobStatus.FAILED.value,
                    Job.updated_at >= now - timedelta(hours=1),
                )
            )
        ).scalar() or 0

        avg_duration_ms = (
            await session.execute(
                select(func.avg(Job.duration_ms)).where(
                    Job.status == JobStatus.COMPLETED.value
                )
            )
        ).scalar()

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            stale_running=stale_running,
            failed_last_hour=failed_last_hour,
            avg_runtime_seconds=(
                round(float(avg_duration_ms) / 1000, 3)
                if avg_duration_ms is not None
                else None
            ),
        )

    async def _transition(
        self,
        session: AsyncSession,
        job_id: UUID,
        from_statuses: tuple[str, ...],
        **values,
    ) -> bool:
        """Conditionally move a job between statuses; False when not eligible."""
        values.setdefault("updated_at", datetime.now(UTC))
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0

    async def retry_job(self, session: AsyncSession, job_id: UUID) -> bool:
        """Manually retry a failed or cancelled job from scratch."""
        try:
            success = await self._transition(
                session,
                job_id,
                (JobStatus.FAILED.value, JobStatus.CANCELLED.value),
                status=JobStatus.PENDING.value,
                attempts=0,
                progress=0,
                phase=None,
                phase_progress=0,
                next_retry_at=None,
                error_code=None,
                error_message=None,
                started_at=None,
                finished_at=None,
                duration_ms=None,
            )
        except IntegrityError:
            await session.rollback()
            raise ConflictError(
                "An identical job is already active",
                details={"job_id": str(job_id)},
            ) from None

        if success:
            logger.info("job.retried", job_id=str(job_id))
        return success

    async def cancel_job(self, session: AsyncSession, job_id: UUID) -> bool:
        """Cancel a job; a running job stops at its next phase boundary."""
        now = datetime.now(UTC)
        success = await self._transition(
            session,
            job_id,
            (
                JobStatus.PENDING.value,
                JobStatus.RETRYING.value,
                JobStatus.PAUSED.value,
                JobStatus.RUNNING.value,
            ),
            status=JobStatus.CANCELLED.value,
            next_retry_at=None,
            error_code="cancelled",
            error_message="Cancelled by request",
            finished_at=now,
            updated_at=now,
        )
        if success:
            logger.info("job.cancelled", job_id=str(job_id))
        return success

    async def pause_job(self, session: AsyncSession, job_id: UUID) -> bool:
        success = await self._transition(
            session,
            job_id,
            (JobStatus.PENDING.value, JobStatus.RETRYING.value),
            status=JobStatus.PAUSED.value,
            next_retry_at=None,
        )
        if success:
            logger.info("job.paused", job_id=str(job_id))
        return success

    async def resume_job(self, session: AsyncSession, job_id: UUID) -> bool:
        success = await self._transition(
            session,
            job_id,
            (JobStatus.PAUSED.value,),
            status=JobStatus.PENDING.value,
        )
        if success:
            logger.info("job.resumed", job_id=str(job_id))
        return success

    async def cleanup_old_jobs(
        self, session: AsyncSession, dry_run: bool = False
    ) -> int:
        """Delete terminal jobs older than the retention window, items first."""
        retention_days = self.settings.job_retention_days
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        expired = select(Job.id).where(
            Job.status.in_(TERMINAL_STATUSES), Job.updated_at < cutoff
        )

        if dry_run:
            return (
                await session.execute(
                    select(func.count()).select_from(expired.subquery())
                )
            ).scalar() or 0

        await session.execute(
            delete(JobItem)
            .where(JobItem.job_id.in_(expired))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(
            delete(Job)
            .where(Job.status.in_(TERMINAL_STATUSES), Job.updated_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        deleted_count = result.rowcount
        await session.commit()

        if deleted_count > 0:
            logger.info(
                "jobs.cleaned_up",
                deleted_count=deleted_count,
                retention_days=retention_days,
            )
        return deleted_count

    async def reap_stale_jobs(
        self, session: AsyncSession, dry_run: bool = False
    ) -> int:
        """
        Fail stale running jobs that have no attempts left.

        Stale jobs with attempts remaining are recovered by the claim protocol
        instead; these would otherwise stay ``running`` forever.
        """
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.settings.job_stale_after_s)
        condition = and_(
            Job.status == JobStatus.RUNNING.value,
            Job.updated_at < cutoff,
            Job.attempts >= self.settings.job_max_attempts,
        )

        if dry_run:
            return (
                await session.execute(select(func.count(Job.id)).where(condition))
            ).scalar() or 0

        result = await session.execute(
            update(Job)
            .where(condition)
            .values(
                status=JobStatus.FAILED.value,
                error_code="stale_timeout",
                error_message=(
                    f"No progress for {self.settings.job_stale_after_s}s "
                    "and no attempts left"
                ),
                finished_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount:
            logger.warning("jobs.stale_reaped", count=result.rowcount)
        return result.rowcount

    async def get_artifact_link(
        self, session: AsyncSession, job_id: UUID, storage: ArtifactStorage
    ) -> ArtifactLinkResponse:
        """Short-lived download URL for a completed job's artifact."""
        job = await self.get_job_or_404(session, job_id)
        if job.status != JobStatus.COMPLETED.value or not job.artifact_path:
            raise ConflictError(
                "Job has no artifact",
                details={"job_id": str(job_id), "status": job.status},
            )

        ttl_s = self.settings.artifact_url_ttl_s
        url = await storage.create_signed_url(job.artifact_path, ttl_s)
        return ArtifactLinkResponse(
            job_id=job.id,
            artifact_path=job.artifact_path,
            artifact_type=job.artifact_type,
            url=url,
            expires_in_s=ttl_s,
        )


def _infer_total(request: JobSubmitRequest) -> int | None:
    """Unit count implied by the payload of known bulk types."""
    for key in ("orders", "recipients", "rows"):
        value = request.payload.get(key)
        if isinstance(value, list):
            return len(value)
    return None
