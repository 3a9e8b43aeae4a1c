"""
Job runner: claims jobs, dispatches them to handlers and records the outcome.

A runner invocation is stateless. ``run_once`` is what the HTTP trigger and the
CLI call; ``start`` wraps it in a polling loop for a long-lived worker process.
"""

import asyncio
import os
import socket
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config.logging import get_logger, job_logger
from api.config.settings import Settings
from api.v1.core.registries import JobRegistry
from api.v1.infra.jobs.claims import claim_jobs
from api.v1.infra.jobs.errors import (
    JobCancelledError,
    classify_error,
    compute_backoff_s,
)
from api.v1.infra.jobs.models import Job, JobStatus
from api.v1.infra.jobs.phases import JobExecution
from api.v1.infra.jobs.resource_pool import ResourcePool
from api.v1.infra.jobs.schemas import RunnerJobOutcome, RunnerReport

logger = get_logger(__name__)

ERROR_MESSAGE_LIMIT = 2000


class JobRunner:
    """
    Runs claimed jobs to completion.

    Features:
    - Compare-and-set claiming with stale job recovery
    - Concurrent jobs per invocation, bounded by ``job_claim_batch_size``
    - Category based retry backoff with jitter
    - Finalization only while the job is still owned by this attempt
    """

    def __init__(
        self,
        settings: Settings,
        sessionmaker: async_sessionmaker[AsyncSession],
        registry: JobRegistry,
        pool: ResourcePool | None = None,
    ):
        self.settings = settings
        self.sessionmaker = sessionmaker
        self.registry = registry
        self.pool = pool or ResourcePool.from_settings(settings)
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False

    async def run_once(self) -> RunnerReport:
        """Claim a batch of jobs and run them concurrently."""
        started = time.monotonic()

        async with self.sessionmaker() as session:
            jobs = await claim_jobs(
                session,
                limit=self.settings.job_claim_batch_size,
                stale_after_s=self.settings.job_stale_after_s,
                max_attempts=self.settings.job_max_attempts,
            )

        results = await asyncio.gather(
            *(self._process_job(job) for job in jobs), return_exceptions=True
        )

        outcomes = []
        for job, result in zip(jobs, results):
            if isinstance(result, RunnerJobOutcome):
                outcomes.append(result)
                continue
            if not isinstance(result, Exception):
                raise result
            logger.error(
                "runner.job_crashed",
                worker_id=self.worker_id,
                job_id=str(job.id),
                job_type=job.type,
                error=str(result),
                exc_info=result,
            )
            outcomes.append(
                RunnerJobOutcome(
                    job_id=job.id, type=job.type, status="error", error_code="runner_error"
                )
            )

        report = RunnerReport(
            claimed=len(jobs),
            outcomes=outcomes,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if jobs:
            logger.info(
                "runner.invocation_finished",
                worker_id=self.worker_id,
                claimed=report.claimed,
                duration_ms=report.duration_ms,
            )
        return report

    async def start(self) -> None:
        """Poll for work until ``stop`` is called."""
        if self.running:
            raise RuntimeError("Runner is already running")

        self.running = True
        logger.info(
            "runner.started",
            worker_id=self.worker_id,
            batch_size=self.settings.job_claim_batch_size,
            poll_interval_ms=self.settings.job_poll_interval_ms,
        )

        try:
            while self.running:
                try:
                    report = await self.run_once()
                except Exception:
                    logger.exception("runner.loop_error", worker_id=self.worker_id)
                    await asyncio.sleep(5)
                    continue

                # Keep draining while there is work
                if report.claimed == 0:
                    await asyncio.sleep(self.settings.job_poll_interval_ms / 1000)
        finally:
            self.running = False
            logger.info("runner.stopped", worker_id=self.worker_id)

    def stop(self) -> None:
        """Stop after the current invocation."""
        self.running = False

    async def _process_job(self, job: Job) -> RunnerJobOutcome:
        """Run one claimed job; handler errors become outcomes."""
        log = job_logger(__name__, job.id, job.type, attempt=job.attempts)
        started = time.monotonic()

        try:
            handler = self.registry.resolve(job.type)
            execution = JobExecution(
                job,
                phases=handler.phases,
                sessionmaker=self.sessionmaker,
                pool=self.pool,
                settings=self.settings,
            )
            log.info("job.started")
            await handler.handle(execution)
        except JobCancelledError as e:
            log.info("job.stopped", reason=e.code, message=e.message)
            return await self._current_outcome(job, e.code)
        except Exception as e:
            return await self._handle_failure(job, e, started, log)

        status = await self._mark_completed(job, execution, started)
        log.info("job.completed", status=status, artifact_path=execution.artifact_path)
        return RunnerJobOutcome(job_id=job.id, type=job.type, status=status)

    async def _finalize(self, job: Job, values: dict[str, Any]) -> bool:
        """Write the outcome only if this attempt still owns the running job."""
        async with self.sessionmaker() as session:
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job.id,
                    Job.status == JobStatus.RUNNING.value,
                    Job.attempts == job.attempts,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def _mark_completed(
        self, job: Job, execution: JobExecution, started: float
    ) -> str:
        now = datetime.now(UTC)
        finalized = await self._finalize(
            job,
            {
                "status": JobStatus.COMPLETED.value,
                "progress": 100,
                "phase_progress": 100,
                "artifact_path": execution.artifact_path,
                "artifact_type": execution.artifact_type,
                "error_code": None,
                "error_message": None,
                "next_retry_at": None,
                "finished_at": now,
                "updated_at": now,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        if not finalized:
            return (await self._current_outcome(job)).status
        return JobStatus.COMPLETED.value

    async def _handle_failure(
        self, job: Job, exc: Exception, started: float, log
    ) -> RunnerJobOutcome:
        """Schedule a retry for recoverable errors with attempts left, else fail."""
        classification = classify_error(exc)
        message = (str(exc) or exc.__class__.__name__)[:ERROR_MESSAGE_LIMIT]
        now = datetime.now(UTC)

        if classification.recoverable and job.attempts < self.settings.job_max_attempts:
            delay_s = compute_backoff_s(
                self.settings.retry_delay_for(classification.category.value),
                job.attempts,
                max_delay_s=self.settings.job_max_backoff_s,
                jitter=self.settings.job_backoff_jitter,
                retry_after_s=classification.retry_after_s,
            )
            values = {
                "status": JobStatus.RETRYING.value,
                "next_retry_at": now + timedelta(seconds=delay_s),
                "error_code": classification.code,
                "error_message": message,
                "updated_at": now,
            }
            status = JobStatus.RETRYING.value
            log.warning(
                "job.retry_scheduled",
                code=classification.code,
                category=classification.category.value,
                delay_s=round(delay_s, 1),
                error=message,
            )
        else:
            values = {
                "status": JobStatus.FAILED.value,
                "next_retry_at": None,
                "error_code": classification.code,
                "error_message": message,
                "finished_at": now,
                "updated_at": now,
                "duration_ms": int((time.monotonic() - started) * 1000),
            }
            status = JobStatus.FAILED.value
            log.error(
                "job.failed",
                code=classification.code,
                category=classification.category.value,
                recoverable=classification.recoverable,
                error=message,
                exc_info=classification.code == "handler_exception",
            )

        if not await self._finalize(job, values):
            return await self._current_outcome(job, classification.code)
        return RunnerJobOutcome(
            job_id=job.id,
            type=job.type,
            status=status,
            error_code=classification.code,
        )

    async def _current_outcome(
        self, job: Job, error_code: str | None = None
    ) -> RunnerJobOutcome:
        """Outcome as stored, for jobs this attempt no longer owns."""
        async with self.sessionmaker() as session:
            row = (
                await session.execute(
                    select(Job.status, Job.error_code).where(Job.id == job.id)
                )
            ).one_or_none()
        status, stored_code = row if row is not None else ("deleted", None)
        return RunnerJobOutcome(
            job_id=job.id,
            type=job.type,
            status=status,
            error_code=stored_code or error_code,
        )


# Runner instance management
_runner_instance: JobRunner | None = None


def get_runner(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    registry: JobRegistry,
) -> JobRunner:
    """Get or create the process-wide runner, which owns the resource pool."""
    global _runner_instance
    if _runner_instance is None:
        _runner_instance = JobRunner(settings, sessionmaker, registry)
    return _runner_instance
