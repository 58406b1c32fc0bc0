"""Read path for job status polling."""

from sqlalchemy.ext.asyncio import AsyncSession

from atelier.db.models.job import JobRow
from atelier.errors.exceptions import NotFoundError
from atelier.models.job import JobStatusModel
from atelier.repositories.job_repo import JobRepository


def to_status_model(row: JobRow) -> JobStatusModel:
    return JobStatusModel(
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        kind=row.kind,
        state=row.state,
        attempts=row.attempts,
        parent_job_id=row.parent_job_id,
        result=row.result,
        error=row.error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def get_status(session: AsyncSession, job_id: str) -> JobStatusModel:
    """Return the latest committed state of a job, or raise NotFoundError."""
    row = await JobRepository(session).get(job_id)
    if row is None:
        raise NotFoundError("Job", job_id)
    return to_status_model(row)
