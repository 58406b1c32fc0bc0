"""Job repository.

State changes go through ``transition``: a single conditional UPDATE whose
WHERE clause carries the expected state (and lease owner). The returned
rowcount says whether this caller won the race.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.db.models.job import JobRow
from atelier.models.enums import JobState
from atelier.repositories.base import BaseRepository


class JobRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, JobRow)

    async def get(self, job_id: str) -> JobRow | None:
        return await self.get_by_id("job_id", job_id)

    async def oldest_queued_ids(self, limit: int) -> list[str]:
        stmt = (
            select(JobRow.job_id)
            .where(JobRow.state == JobState.QUEUED)
            .order_by(JobRow.created_at, JobRow.job_id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def expired_leases(self, now: datetime) -> list[tuple[str, str | None]]:
        stmt = select(JobRow.job_id, JobRow.lease_owner).where(
            JobRow.state == JobState.ACTIVE,
            JobRow.lease_expires_at < now,
        )
        result = await self.session.execute(stmt)
        return [(row.job_id, row.lease_owner) for row in result]

    async def transition(
        self,
        job_id: str,
        expected_state: JobState,
        values: dict[str, Any],
        lease_owner: str | None = None,
        extra_conditions: tuple = (),
    ) -> bool:
        """Apply ``values`` only if the job is still in ``expected_state``.

        When ``lease_owner`` is given the job must also be leased to it.
        Returns True if exactly one row changed.
        """
        stmt = update(JobRow).where(
            JobRow.job_id == job_id,
            JobRow.state == expected_state,
            *extra_conditions,
        )
        if lease_owner is not None:
            stmt = stmt.where(JobRow.lease_owner == lease_owner)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def count_in_flight(self, tenant_id: str, kinds: list[str]) -> int:
        """Count queued or active jobs of the given kinds for a tenant."""
        if not kinds:
            return 0
        stmt = select(func.count()).select_from(JobRow).where(
            JobRow.tenant_id == tenant_id,
            JobRow.kind.in_(kinds),
            JobRow.state.in_([JobState.QUEUED, JobState.ACTIVE]),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def recent_completed(self, tenant_id: str, kinds: list[str], limit: int) -> list[JobRow]:
        """Newest completed jobs of the given kinds for a tenant."""
        stmt = (
            select(JobRow)
            .where(
                JobRow.tenant_id == tenant_id,
                JobRow.kind.in_(kinds),
                JobRow.state == JobState.COMPLETED,
            )
            .order_by(JobRow.created_at.desc(), JobRow.job_id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
