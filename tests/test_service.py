import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from api.v1.core.exceptions import ConflictError, NotFoundError
from api.v1.infra.jobs.dedupe import compute_dedupe_key
from api.v1.infra.jobs.kinds import JobType
from api.v1.infra.jobs.models import Job, JobItem, JobStatus
from api.v1.infra.jobs.schemas import JobSubmitRequest
from api.v1.infra.jobs.service import JobService

ORDERS = {
    "orders": [
        {"matchId": "m1", "officialId": "o1"},
        {"matchId": "m2", "officialId": "o2"},
    ]
}


def pdf_request(**kwargs) -> JobSubmitRequest:
    return JobSubmitRequest(
        type=JobType.MISSION_ORDERS_BULK_PDF, payload=kwargs.pop("payload", ORDERS), **kwargs
    )


@pytest.fixture
def job_service(settings) -> JobService:
    return JobService(settings)


class TestSubmit:
    async def test_submit_creates_pending_job(self, job_service, db_session, fetch_job):
        result = await job_service.submit_job(
            db_session, pdf_request(), requested_by="ops@league.test", request_id="req-1"
        )

        assert result.reused is False
        assert result.status == JobStatus.PENDING.value
        assert result.progress == 0

        job = await fetch_job(result.job_id)
        assert job.type == JobType.MISSION_ORDERS_BULK_PDF.value
        assert job.priority == 90
        assert job.total == 2
        assert job.label == "Mission orders PDF batch"
        assert job.requested_by == "ops@league.test"
        assert job.request_id == "req-1"
        assert job.dedupe_key == compute_dedupe_key(job.type, ORDERS)

    async def test_identical_submission_reuses_job(self, job_service, db_session):
        first = await job_service.submit_job(db_session, pdf_request())
        reordered = {"orders": list(reversed(ORDERS["orders"]))}
        second = await job_service.submit_job(db_session, pdf_request(payload=reordered))

        assert second.reused is True
        assert second.job_id == first.job_id

    async def test_completed_job_is_reused_with_artifact(
        self, job_service, db_session, sessionmaker
    ):
        first = await job_service.submit_job(db_session, pdf_request())
        async with sessionmaker() as session:
            job = await session.get(Job, first.job_id)
            job.status = JobStatus.COMPLETED.value
            job.progress = 100
            job.artifact_path = "batches/x.pdf"
            await session.commit()

        again = await job_service.submit_job(db_session, pdf_request())

        assert again.reused is True
        assert again.job_id == first.job_id
        assert again.artifact_path == "batches/x.pdf"

    async def test_email_campaigns_with_different_variables_are_distinct(
        self, job_service, db_session
    ):
        def campaign(match: str, **extra) -> JobSubmitRequest:
            return JobSubmitRequest(
                type=JobType.MISSION_ORDERS_BULK_EMAIL,
                payload={
                    "subject": "Mission order {match}",
                    "template": "Hello {name}",
                    "variables": {"match": match},
                    "recipients": [{"email": "ref@league.test", "name": "Ref"}],
                    **extra,
                },
            )

        j12 = await job_service.submit_job(db_session, campaign("J12"))
        j13 = await job_service.submit_job(db_session, campaign("J13"))
        attached = await job_service.submit_job(
            db_session, campaign("J12", attach_mission_order=True)
        )

        assert j13.reused is False
        assert attached.reused is False
        assert len({j12.job_id, j13.job_id, attached.job_id}) == 3

    async def test_cancelled_job_does_not_block_resubmission(self, job_service, db_session):
        first = await job_service.submit_job(db_session, pdf_request())
        await job_service.cancel_job(db_session, first.job_id)

        again = await job_service.submit_job(db_session, pdf_request())

        assert again.reused is False
        assert again.job_id != first.job_id

    async def test_dedupe_disabled_creates_new_jobs(self, job_service, db_session, fetch_job):
        first = await job_service.submit_job(db_session, pdf_request(dedupe=False))
        second = await job_service.submit_job(db_session, pdf_request(dedupe=False))

        assert first.job_id != second.job_id
        assert (await fetch_job(first.job_id)).dedupe_key is None

    async def test_concurrent_identical_submissions_share_one_job(
        self, job_service, sessionmaker
    ):
        async def submit():
            async with sessionmaker() as session:
                return await job_service.submit_job(session, pdf_request())

        results = await asyncio.gather(*(submit() for _ in range(3)))

        assert len({result.job_id for result in results}) == 1
        assert sum(1 for result in results if not result.reused) == 1

    async def test_explicit_priority_total_and_label(self, job_service, db_session, fetch_job):
        result = await job_service.submit_job(
            db_session, pdf_request(priority=500, total=7, label="Round 12")
        )

        job = await fetch_job(result.job_id)
        assert job.priority == 500
        assert job.total == 7
        assert job.label == "Round 12"

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValidationError):
            JobSubmitRequest(type="mission_orders.fax", payload={})


class TestQueries:
    async def test_get_job_or_404(self, job_service, db_session):
        with pytest.raises(NotFoundError):
            await job_service.get_job_or_404(db_session, uuid.uuid4())

    async def test_list_jobs_filters_and_counts(self, job_service, db_session, make_job):
        await make_job(type=JobType.EXPORTS_TABLE.value)
        await make_job(type=JobType.EXPORTS_TABLE.value, status=JobStatus.FAILED.value)
        await make_job(type=JobType.MAINTENANCE_CLEANUP.value)

        jobs, total = await job_service.list_jobs(
            db_session, job_type=JobType.EXPORTS_TABLE.value
        )
        assert total == 2
        assert {job.type for job in jobs} == {JobType.EXPORTS_TABLE.value}

        jobs, total = await job_service.list_jobs(
            db_session, statuses=[JobStatus.FAILED.value]
        )
        assert total == 1

        jobs, total = await job_service.list_jobs(db_session, limit=1)
        assert total == 3
        assert len(jobs) == 1

    async def test_stats(self, job_service, db_session, make_job):
        await make_job()
        await make_job(status=JobStatus.RETRYING.value)
        await make_job(
            status=JobStatus.RUNNING.value,
            updated_at=datetime.now(UTC) - timedelta(hours=2),
        )
        await make_job(status=JobStatus.COMPLETED.value, duration_ms=2000)
        await make_job(status=JobStatus.FAILED.value)

        stats = await job_service.get_job_stats(db_session)

        assert stats.total_jobs == 5
        assert stats.queue_depth == 3
        assert stats.stale_running == 1
        assert stats.failed_last_hour == 1
        assert stats.avg_runtime_seconds == 2.0
        assert stats.by_type == {JobType.MAINTENANCE_CLEANUP.value: 5}


class TestControl:
    async def test_cancel_pending_job(self, job_service, db_session, make_job, fetch_job):
        job = await make_job()

        assert await job_service.cancel_job(db_session, job.id) is True

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.CANCELLED.value
        assert stored.error_code == "cancelled"
        assert stored.finished_at is not None

    async def test_cancel_finished_job_is_refused(
        self, job_service, db_session, make_job, fetch_job
    ):
        job = await make_job(status=JobStatus.COMPLETED.value)

        assert await job_service.cancel_job(db_session, job.id) is False
        assert (await fetch_job(job.id)).status == JobStatus.COMPLETED.value

    async def test_pause_and_resume(self, job_service, db_session, make_job, fetch_job):
        job = await make_job(
            status=JobStatus.RETRYING.value,
            next_retry_at=datetime.now(UTC) + timedelta(minutes=1),
        )

        assert await job_service.pause_job(db_session, job.id) is True
        paused = await fetch_job(job.id)
        assert paused.status == JobStatus.PAUSED.value
        assert paused.next_retry_at is None

        assert await job_service.resume_job(db_session, job.id) is True
        assert (await fetch_job(job.id)).status == JobStatus.PENDING.value

        # Only paused jobs resume, only queued jobs pause
        assert await job_service.resume_job(db_session, job.id) is False
        running = await make_job(status=JobStatus.RUNNING.value)
        assert await job_service.pause_job(db_session, running.id) is False

    async def test_retry_failed_job_resets_state(
        self, job_service, db_session, make_job, fetch_job
    ):
        job = await make_job(
            status=JobStatus.FAILED.value,
            attempts=3,
            progress=60,
            phase="merge",
            error_code="no_pages",
            error_message="No pages",
        )

        assert await job_service.retry_job(db_session, job.id) is True

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.PENDING.value
        assert stored.attempts == 0
        assert stored.progress == 0
        assert stored.phase is None
        assert stored.error_code is None
        assert stored.error_message is None

    async def test_retry_only_failed_or_cancelled(self, job_service, db_session, make_job):
        job = await make_job(status=JobStatus.RUNNING.value)

        assert await job_service.retry_job(db_session, job.id) is False

    async def test_retry_conflicts_with_active_duplicate(
        self, job_service, db_session, make_job
    ):
        key = compute_dedupe_key(JobType.MISSION_ORDERS_BULK_PDF, ORDERS)
        failed = await make_job(
            type=JobType.MISSION_ORDERS_BULK_PDF.value,
            status=JobStatus.FAILED.value,
            dedupe_key=key,
        )
        await make_job(type=JobType.MISSION_ORDERS_BULK_PDF.value, dedupe_key=key)

        with pytest.raises(ConflictError):
            await job_service.retry_job(db_session, failed.id)


class TestMaintenance:
    async def test_cleanup_old_jobs(self, job_service, db_session, make_job, fetch_job):
        old = datetime.now(UTC) - timedelta(days=45)
        expired = await make_job(status=JobStatus.COMPLETED.value, updated_at=old)
        db_session.add(JobItem(job_id=expired.id, seq=0, target={"email": "a@x.org"}))
        await db_session.commit()
        recent = await make_job(status=JobStatus.COMPLETED.value)
        active = await make_job(status=JobStatus.PENDING.value, updated_at=old)

        assert await job_service.cleanup_old_jobs(db_session, dry_run=True) == 1
        assert await fetch_job(expired.id) is not None

        assert await job_service.cleanup_old_jobs(db_session) == 1
        assert await fetch_job(expired.id) is None
        assert await fetch_job(recent.id) is not None
        assert await fetch_job(active.id) is not None

    async def test_reap_stale_jobs_without_attempts_left(
        self, job_service, db_session, make_job, fetch_job
    ):
        stale_at = datetime.now(UTC) - timedelta(hours=1)
        exhausted = await make_job(
            status=JobStatus.RUNNING.value, attempts=3, updated_at=stale_at
        )
        recoverable = await make_job(
            status=JobStatus.RUNNING.value, attempts=1, updated_at=stale_at
        )

        assert await job_service.reap_stale_jobs(db_session, dry_run=True) == 1
        assert await job_service.reap_stale_jobs(db_session) == 1

        reaped = await fetch_job(exhausted.id)
        assert reaped.status == JobStatus.FAILED.value
        assert reaped.error_code == "stale_timeout"
        assert (await fetch_job(recoverable.id)).status == JobStatus.RUNNING.value


class TestArtifactLink:
    async def test_link_for_completed_job(self, job_service, db_session, make_job, storage):
        await storage.upload("exports/a.csv", b"a,b\n", "text/csv")
        job = await make_job(
            status=JobStatus.COMPLETED.value,
            artifact_path="exports/a.csv",
            artifact_type="csv",
        )

        link = await job_service.get_artifact_link(db_session, job.id, storage)

        assert link.url.startswith("https://storage.test/exports/a.csv")
        assert link.expires_in_s == job_service.settings.artifact_url_ttl_s
        assert link.artifact_type == "csv"

    async def test_no_link_before_completion(self, job_service, db_session, make_job, storage):
        job = await make_job(status=JobStatus.RUNNING.value)

        with pytest.raises(ConflictError):
            await job_service.get_artifact_link(db_session, job.id, storage)

