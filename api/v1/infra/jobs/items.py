"""
Job item store: fan-out units of bulk jobs.

Items are created once per job and then only move forward. Later phases touch
``pending`` items only, so a retried job resumes where the previous attempt
stopped instead of repeating finished work.
"""

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config.logging import get_logger
from api.v1.infra.jobs.models import JobItem, JobItemStatus

logger = get_logger(__name__)

ITEM_INSERT_CHUNK_SIZE = 500

_FINAL_ITEM_STATUSES = (
    JobItemStatus.COMPLETED.value,
    JobItemStatus.FAILED.value,
    JobItemStatus.SKIPPED.value,
)


class JobItemStore:
    """Item operations for a single job, each in its own short transaction."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], job_id: UUID):
        self._sessionmaker = sessionmaker
        self.job_id = job_id

    async def prepare(self, targets: Sequence[dict[str, Any]]) -> int:
        """
        Create one item per target unless the job already has items.

        Running it again is a no-op apart from resetting items a crashed
        attempt left ``running`` back to ``pending``. Returns the item count.
        """
        async with self._sessionmaker() as session:
            existing = await self._count(session)
            if existing:
                result = await session.execute(
                    update(JobItem)
                    .where(
                        JobItem.job_id == self.job_id,
                        JobItem.status == JobItemStatus.RUNNING.value,
                    )
                    .values(status=JobItemStatus.PENDING.value, started_at=None)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount:
                    logger.info(
                        "job_items.reset_running",
                        job_id=str(self.job_id),
                        reset=result.rowcount,
                    )
                return existing

            rows = [
                {
                    "job_id": self.job_id,
                    "seq": seq,
                    "status": JobItemStatus.PENDING.value,
                    "target": dict(target),
                }
                for seq, target in enumerate(targets)
            ]
            for start in range(0, len(rows), ITEM_INSERT_CHUNK_SIZE):
                await session.execute(
                    insert(JobItem), rows[start : start + ITEM_INSERT_CHUNK_SIZE]
                )
            await session.commit()

        logger.info("job_items.created", job_id=str(self.job_id), count=len(rows))
        return len(rows)

    async def pending(self) -> list[JobItem]:
        """Pending items in ``seq`` order."""
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(JobItem)
                .where(
                    JobItem.job_id == self.job_id,
                    JobItem.status == JobItemStatus.PENDING.value,
                )
                .order_by(JobItem.seq)
            )
            return list(result.scalars().all())

    async def mark(
        self,
        item_id: UUID,
        status: JobItemStatus,
        *,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Move an item to ``status``; finished items are never changed again.

        Returns False when the item was already final.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {"status": status.value}
        if status == JobItemStatus.RUNNING:
            values["started_at"] = now
        else:
            values["finished_at"] = now
            values["error_code"] = error_code
            values["error_message"] = error_message

        async with self._sessionmaker() as session:
            result = await session.execute(
                update(JobItem)
                .where(
                    JobItem.id == item_id,
                    JobItem.status.not_in(_FINAL_ITEM_STATUSES),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def counts(self) -> dict[str, int]:
        """Number of items per status, with every status present."""
        async with self._sessionmaker() as session:
            return await count_items_by_status(session, self.job_id)

    async def _count(self, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count(JobItem.id)).where(JobItem.job_id == self.job_id)
        )
        return result.scalar() or 0


async def count_items_by_status(session: AsyncSession, job_id: UUID) -> dict[str, int]:
    result = await session.execute(
        select(JobItem.status, func.count(JobItem.id))
        .where(JobItem.job_id == job_id)
        .group_by(JobItem.status)
    )
    counts = {status.value: 0 for status in JobItemStatus}
    counts.update(dict(result.all()))
    counts["total"] = sum(counts[status.value] for status in JobItemStatus)
    return counts
