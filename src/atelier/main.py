"""FastAPI application factory and lifespan management."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from atelier.config import settings
from atelier.db.engine import create_db_engine, create_session_factory, create_tables
from atelier.integrations.redis_client import connect_redis
from atelier.integrations.storage import LocalObjectStore
from atelier.logging_config import configure_logging

# Configure logging at import time
_json_logs = os.environ.get("ATELIER_LOCAL_MODE", "0") != "1"
configure_logging(log_level=settings.log_level, json_output=_json_logs)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown resources."""
    db_url = settings.effective_database_url
    engine = create_db_engine(db_url)

    if settings.auto_create_tables:
        await create_tables(engine)
        logger.info("Database tables ensured")

    app.state.db_engine = engine
    app.state.db_session_factory = create_session_factory(engine)
    app.state.redis = await connect_redis(settings.effective_redis_url)
    app.state.storage = LocalObjectStore(settings.storage_dir, settings.storage_base_url)

    logger.info("Atelier API started (db=%s)", "sqlite" if "sqlite" in db_url else "postgresql")
    yield

    # Shutdown
    if app.state.redis:
        await app.state.redis.aclose()
    await engine.dispose()
    logger.info("Atelier API shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Atelier Job API",
        version="0.1.0",
        description="Tenant-scoped asynchronous AI generation jobs with billing-gated admission.",
        lifespan=lifespan,
    )

    from atelier.api.middleware.trace_id import TraceIdMiddleware
    app.add_middleware(TraceIdMiddleware)

    # Register error handlers
    from atelier.errors.handlers import register_exception_handlers
    register_exception_handlers(app)

    # Rate limiting on submission endpoints
    from atelier.api.middleware.rate_limit import setup_rate_limiter
    setup_rate_limiter(app)

    # Prometheus metrics (internal endpoint)
    if settings.metrics_enabled:
        from atelier.metrics import setup_metrics
        setup_metrics(app)

    # Import and mount routers
    from atelier.api.router import api_router
    app.include_router(api_router)

    return app


app = create_app()
