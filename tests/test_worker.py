import asyncio
from datetime import UTC, datetime

import httpx
import pytest

from api.v1.core.registries import JobRegistry
from api.v1.infra.jobs.errors import CollaboratorError
from api.v1.infra.jobs.kinds import JOB_PHASES, JobType
from api.v1.infra.jobs.models import JobStatus
from api.v1.infra.jobs.resource_pool import ResourcePool
from api.v1.infra.jobs.service import JobService
from api.v1.infra.jobs.worker import JobRunner
from conftest import as_utc


class ScriptedHandler:
    """Maintenance handler whose behaviour each test scripts."""

    job_type = JobType.MAINTENANCE_CLEANUP
    phases = JOB_PHASES[JobType.MAINTENANCE_CLEANUP]

    def __init__(self, action=None):
        self.action = action
        self.calls = 0

    async def handle(self, execution) -> None:
        self.calls += 1
        async with execution.phase("cleanup"):
            await execution.report(1, 2)
            if self.action is not None:
                await self.action(execution)


@pytest.fixture
def make_runner(settings, sessionmaker):
    def _make_runner(handler: ScriptedHandler) -> JobRunner:
        registry = JobRegistry()
        registry.register(handler.job_type, handler)
        return JobRunner(
            settings, sessionmaker, registry, ResourcePool.from_settings(settings)
        )

    return _make_runner


async def test_successful_job_completes(make_runner, make_job, fetch_job):
    handler = ScriptedHandler()
    job = await make_job()

    report = await make_runner(handler).run_once()

    assert report.claimed == 1
    assert report.outcomes[0].job_id == job.id
    assert report.outcomes[0].status == JobStatus.COMPLETED.value

    stored = await fetch_job(job.id)
    assert stored.status == JobStatus.COMPLETED.value
    assert stored.progress == 100
    assert stored.phase_progress == 100
    assert stored.finished_at is not None
    assert stored.duration_ms is not None
    assert stored.error_code is None


async def test_no_work(make_runner):
    report = await make_runner(ScriptedHandler()).run_once()

    assert report.claimed == 0
    assert report.outcomes == []


async def test_network_error_schedules_retry(make_runner, make_job, fetch_job):
    async def fail(execution):
        raise httpx.ConnectError("connection refused")

    job = await make_job()
    before = datetime.now(UTC)

    report = await make_runner(ScriptedHandler(fail)).run_once()

    assert report.outcomes[0].status == JobStatus.RETRYING.value
    assert report.outcomes[0].error_code == "network_error"
    stored = await fetch_job(job.id)
    assert stored.status == JobStatus.RETRYING.value
    assert stored.error_code == "network_error"
    assert stored.error_message == "connection refused"
    assert as_utc(stored.next_retry_at) > before
    assert stored.finished_at is None


async def test_retry_delay_respects_retry_after(make_runner, make_job, fetch_job):
    async def throttled(execution):
        raise CollaboratorError(
            "rate limited", code="rate_limited", status_code=429, retry_after_s=120
        )

    job = await make_job()
    before = datetime.now(UTC)

    await make_runner(ScriptedHandler(throttled)).run_once()

    stored = await fetch_job(job.id)
    assert stored.status == JobStatus.RETRYING.value
    assert (as_utc(stored.next_retry_at) - before).total_seconds() >= 119


async def test_exhausted_attempts_fail_the_job(make_runner, make_job, fetch_job):
    async def fail(execution):
        raise httpx.ReadTimeout("too slow")

    job = await make_job(status=JobStatus.RETRYING.value, attempts=2)

    report = await make_runner(ScriptedHandler(fail)).run_once()

    assert report.outcomes[0].status == JobStatus.FAILED.value
    stored = await fetch_job(job.id)
    assert stored.attempts == 3
    assert stored.status == JobStatus.FAILED.value
    assert stored.error_code == "timeout"
    assert stored.next_retry_at is None
    assert stored.finished_at is not None


async def test_validation_error_fails_immediately(make_runner, make_job, fetch_job):
    async def bad_input(execution):
        raise ValueError("bad row")

    job = await make_job()

    await make_runner(ScriptedHandler(bad_input)).run_once()

    stored = await fetch_job(job.id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.attempts == 1
    assert stored.error_code == "invalid_payload"


async def test_unknown_type_fails_without_retry(make_runner, make_job, fetch_job):
    job = await make_job(type=JobType.EXPORTS_TABLE.value)

    report = await make_runner(ScriptedHandler()).run_once()

    assert report.outcomes[0].error_code == "unknown_type"
    stored = await fetch_job(job.id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.error_code == "unknown_type"


async def test_cancel_during_run_is_not_overwritten(
    make_runner, make_job, fetch_job, sessionmaker, settings
):
    async def cancel_self(execution):
        async with sessionmaker() as session:
            await JobService(settings).cancel_job(session, execution.job_id)

    job = await make_job()

    report = await make_runner(ScriptedHandler(cancel_self)).run_once()

    assert report.outcomes[0].status == JobStatus.CANCELLED.value
    stored = await fetch_job(job.id)
    assert stored.status == JobStatus.CANCELLED.value
    assert stored.error_code == "cancelled"
    assert stored.progress < 100


async def test_jobs_in_a_batch_run_concurrently(make_runner, make_job, fetch_job):
    started = asyncio.Event()
    waiting = 0

    async def rendezvous(execution):
        nonlocal waiting
        waiting += 1
        if waiting == 2:
            started.set()
        await asyncio.wait_for(started.wait(), timeout=5)

    first = await make_job()
    second = await make_job()

    report = await make_runner(ScriptedHandler(rendezvous)).run_once()

    assert report.claimed == 2
    for job in (first, second):
        assert (await fetch_job(job.id)).status == JobStatus.COMPLETED.value


async def test_finalize_error_is_reported_without_losing_siblings(
    make_runner, make_job, fetch_job
):
    broken = await make_job()
    healthy = await make_job()
    runner = make_runner(ScriptedHandler())
    original_finalize = runner._finalize

    async def finalize(job, values):
        if job.id == broken.id:
            raise RuntimeError("database went away")
        return await original_finalize(job, values)

    runner._finalize = finalize

    report = await runner.run_once()

    outcomes = {outcome.job_id: outcome for outcome in report.outcomes}
    assert report.claimed == 2
    assert outcomes[broken.id].status == "error"
    assert outcomes[broken.id].error_code == "runner_error"
    assert outcomes[healthy.id].status == JobStatus.COMPLETED.value
    assert (await fetch_job(healthy.id)).status == JobStatus.COMPLETED.value


async def test_start_and_stop(make_runner, make_job, fetch_job, settings):
    settings.job_poll_interval_ms = 10
    handler = ScriptedHandler()
    runner = make_runner(handler)
    job = await make_job()

    task = asyncio.create_task(runner.start())
    for _ in range(200):
        if (await fetch_job(job.id)).status == JobStatus.COMPLETED.value:
            break
        await asyncio.sleep(0.01)
    runner.stop()
    await asyncio.wait_for(task, timeout=5)

    assert handler.calls == 1
    assert runner.running is False
    assert (await fetch_job(job.id)).status == JobStatus.COMPLETED.value
