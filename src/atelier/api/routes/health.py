"""Health check endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select

from atelier.db.models.job import JobRow
from atelier.models.enums import JobState

router = APIRouter()

SERVICE_NAME = "atelier-api"
SERVICE_VERSION = "0.1.0"


@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": SERVICE_NAME, "version": SERVICE_VERSION}


@router.get("/health/live")
async def liveness():
    """Liveness probe: always 200 while the process is running."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness(request: Request):
    """Readiness probe.

    The database is required. Redis is optional (wake-ups only) and is
    reported as ``disabled`` when not configured. The current queue depth is
    included so operators can spot a stalled worker fleet.
    """
    checks: dict[str, str] = {}
    queue_depth: dict[str, int] = {}
    ready = True

    try:
        async with request.app.state.db_session_factory() as session:
            rows = await session.execute(
                select(JobRow.state, func.count())
                .where(JobRow.state.in_([JobState.QUEUED, JobState.ACTIVE]))
                .group_by(JobRow.state)
            )
            queue_depth = {str(state): int(count) for state, count in rows}
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"
        ready = False

    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        checks["redis"] = "disabled"
    else:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"
            ready = False

    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "checks": checks,
            "queue": {
                "queued": queue_depth.get(JobState.QUEUED, 0),
                "active": queue_depth.get(JobState.ACTIVE, 0),
            },
        },
    )
