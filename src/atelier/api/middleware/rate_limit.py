"""Rate limiting for job submission endpoints using slowapi."""

import logging

from fastapi import FastAPI
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from atelier.config import settings

logger = logging.getLogger(__name__)


def submission_limit() -> str:
    return f"{settings.rate_limit_submissions_per_minute}/minute"


# Counters live in Redis when it is configured so every API replica shares them
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=settings.effective_redis_url or "memory://",
    enabled=settings.rate_limit_enabled,
)


def setup_rate_limiter(app: FastAPI) -> None:
    """Attach the limiter and its 429 handler to the app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    if settings.rate_limit_enabled:
        logger.info("Rate limiter configured (submissions=%s)", submission_limit())
