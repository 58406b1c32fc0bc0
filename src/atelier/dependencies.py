"""FastAPI dependency injection providers."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request

from atelier.config import settings
from atelier.integrations.storage import ObjectStore
from atelier.workers.queue import JobQueue


async def get_db(request: Request) -> AsyncGenerator:
    """Yield a database session from the app's session factory."""
    session_factory = request.app.state.db_session_factory
    async with session_factory() as session:
        yield session


def get_job_queue(request: Request) -> JobQueue:
    """Build a queue bound to the app's session factory and Redis connection."""
    return JobQueue.from_settings(
        request.app.state.db_session_factory,
        settings,
        redis=getattr(request.app.state, "redis", None),
    )


def get_storage(request: Request) -> ObjectStore:
    return request.app.state.storage


# Type aliases for dependency injection
Queue = Annotated[JobQueue, Depends(get_job_queue)]
Storage = Annotated[ObjectStore, Depends(get_storage)]
