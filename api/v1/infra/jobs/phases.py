"""
Execution context handed to job handlers.

A handler walks its phases in declaration order through ``execution.phase()``.
Each phase boundary checks that the job still belongs to this attempt (a
cancel or a stale re-claim ends it there), and every write also bumps
``updated_at`` so the claim protocol sees the job as alive.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config.logging import job_logger
from api.config.settings import Settings
from api.v1.infra.jobs.errors import JobCancelledError
from api.v1.infra.jobs.items import JobItemStore
from api.v1.infra.jobs.models import Job, JobStatus
from api.v1.infra.jobs.progress import PhaseSpec, overall_progress, percent_of
from api.v1.infra.jobs.resource_pool import ResourcePool


def _monotonic(value: int):
    """SQL expression keeping the larger of the stored and the new progress."""
    return case((Job.progress < value, value), else_=Job.progress)


class JobExecution:
    """One attempt of one claimed job."""

    def __init__(
        self,
        job: Job,
        *,
        phases: Sequence[PhaseSpec],
        sessionmaker: async_sessionmaker[AsyncSession],
        pool: ResourcePool,
        settings: Settings,
    ):
        self.job_id: UUID = job.id
        self.job_type: str = job.type
        self.attempt: int = job.attempts
        self.dedupe_key: str | None = job.dedupe_key
        self.payload: dict[str, Any] = dict(job.payload or {})
        self.total: int | None = job.total
        self.phases = tuple(phases)
        self.pool = pool
        self.settings = settings
        self.items = JobItemStore(sessionmaker, job.id)
        self.artifact_path: str | None = None
        self.artifact_type: str | None = None
        self.log = job_logger(__name__, job.id, job.type, attempt=job.attempts)

        self._sessionmaker = sessionmaker
        self._phase_names = [spec.name for spec in self.phases]
        self._current_phase: str | None = None
        self._phase_index = -1
        self._last_phase_progress: int | None = None

    def session(self) -> AsyncSession:
        """Open a short-lived session for handler queries."""
        return self._sessionmaker()

    @asynccontextmanager
    async def phase(self, name: str) -> AsyncIterator["JobExecution"]:
        """Run the body as phase ``name``; phases must be entered in order."""
        if name not in self._phase_names:
            raise KeyError(f"Unknown phase '{name}' for {self.job_type}")
        index = self._phase_names.index(name)
        if index <= self._phase_index:
            raise RuntimeError(
                f"Phase '{name}' entered out of order for {self.job_type}"
            )

        await self._enter_phase(name)
        self._phase_index = index
        self._current_phase = name
        self._last_phase_progress = 0
        self.log.info("job.phase_started", phase=name)

        yield self

        await self._write_progress(100)
        self.log.info("job.phase_finished", phase=name)

    async def report(self, done: int, total: int) -> None:
        """Report ``done`` of ``total`` units finished inside the current phase."""
        if self._current_phase is None:
            raise RuntimeError("report() called outside of a phase")
        percent = percent_of(done, total)
        if percent == self._last_phase_progress:
            return
        await self._write_progress(percent)

    async def update_payload(self, **fields: Any) -> None:
        """Merge diagnostic fields into the stored payload."""
        self.payload.update(fields)
        await self._update(
            {"payload": dict(self.payload), "updated_at": datetime.now(UTC)}
        )

    async def set_total(self, total: int) -> None:
        self.total = total
        await self._update({"total": total, "updated_at": datetime.now(UTC)})

    async def set_artifact(
        self, path: str, artifact_type: str, **details: Any
    ) -> None:
        """Record the produced artifact; it becomes visible once the job completes."""
        self.artifact_path = path
        self.artifact_type = artifact_type
        await self.update_payload(artifact={"path": path, **details})

    async def _enter_phase(self, name: str) -> None:
        entered = await self._update(
            {
                "phase": name,
                "phase_progress": 0,
                "progress": _monotonic(overall_progress(self.phases, name, 0)),
                "updated_at": datetime.now(UTC),
            }
        )
        if not entered:
            await self._raise_lost()

    async def _write_progress(self, percent: int) -> None:
        self._last_phase_progress = percent
        await self._update(
            {
                "phase_progress": percent,
                "progress": _monotonic(
                    overall_progress(self.phases, self._current_phase, percent)
                ),
                "updated_at": datetime.now(UTC),
            }
        )

    async def _update(self, values: dict[str, Any]) -> bool:
        """Apply ``values`` while this attempt still owns the running job."""
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == self.job_id,
                    Job.status == JobStatus.RUNNING.value,
                    Job.attempts == self.attempt,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def _raise_lost(self) -> None:
        async with self._sessionmaker() as session:
            row = (
                await session.execute(
                    select(Job.status, Job.attempts).where(Job.id == self.job_id)
                )
            ).one_or_none()

        if row is None:
            raise JobCancelledError("Job no longer exists", code="job_deleted")
        status, attempts = row
        if status == JobStatus.CANCELLED.value:
            raise JobCancelledError("Job was cancelled")
        raise JobCancelledError(
            f"Job was taken over (status={status}, attempt={attempts})",
            code="superseded",
        )
