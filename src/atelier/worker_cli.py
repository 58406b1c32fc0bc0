"""CLI entry points for the worker pool and the usage reporter."""

import argparse
import asyncio
import logging
import os
import signal
import sys

from prometheus_client import start_http_server

from atelier.config import settings
from atelier.db.engine import create_db_engine, create_session_factory, create_tables
from atelier.integrations.ai_provider import AIProvider
from atelier.integrations.billing import StripeBillingClient
from atelier.integrations.redis_client import connect_redis
from atelier.integrations.storage import LocalObjectStore
from atelier.logging_config import configure_logging
from atelier.metrics import registry
from atelier.models.billing import UsageReportSummary
from atelier.services.usage_reporter import UsageReporter
from atelier.workers.base import HandlerContext
from atelier.workers.pool import WorkerPool
from atelier.workers.queue import JobQueue

logger = logging.getLogger(__name__)


async def run_worker(concurrency: int) -> None:
    """Run a worker pool until SIGTERM/SIGINT, then drain within the grace period."""
    engine = create_db_engine(settings.effective_database_url)
    if settings.auto_create_tables:
        await create_tables(engine)
    session_factory = create_session_factory(engine)
    redis = await connect_redis(settings.effective_redis_url)
    ai_provider = AIProvider.from_settings(settings)

    queue = JobQueue.from_settings(session_factory, settings, redis=redis)
    context = HandlerContext(
        storage=LocalObjectStore(settings.storage_dir, settings.storage_base_url),
        ai_provider=ai_provider,
        storage_base_url=settings.storage_base_url,
    )
    pool = WorkerPool(
        queue,
        context,
        concurrency=concurrency,
        poll_interval=settings.poll_interval_seconds,
        reaper_interval=settings.reaper_interval_seconds,
    )

    stop_requested = asyncio.Event()

    def _request_stop(sig: signal.Signals) -> None:
        logger.info("%s received, shutting down worker gracefully", sig.name)
        pool.stop()
        stop_requested.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_stop, sig)

    if settings.worker_metrics_port:
        start_http_server(settings.worker_metrics_port, registry=registry)
        logger.info("Worker metrics on port %d", settings.worker_metrics_port)

    pool.start()
    try:
        await stop_requested.wait()
    finally:
        await pool.wait_stopped(settings.shutdown_grace_seconds)
        await ai_provider.aclose()
        if redis is not None:
            await redis.aclose()
        await engine.dispose()
        logger.info("Worker shut down")


async def run_usage_report() -> UsageReportSummary:
    """One reporting pass against Stripe."""
    engine = create_db_engine(settings.effective_database_url)
    try:
        reporter = UsageReporter(
            create_session_factory(engine),
            StripeBillingClient(settings.stripe_secret_key),
            batch_size=settings.report_batch_size,
            verify_subscriptions=settings.verify_subscriptions,
        )
        return await reporter.run_once()
    finally:
        await engine.dispose()


def _configure(local: bool) -> None:
    if local:
        os.environ["ATELIER_LOCAL_MODE"] = "1"
        settings.local_mode = True
    configure_logging(log_level=settings.log_level, json_output=not settings.local_mode)


def worker_main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="atelier-worker",
        description="Run AI job workers against the shared queue",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.worker_concurrency,
        help=f"Concurrent jobs in this process (default: {settings.worker_concurrency})",
    )
    parser.add_argument("--local", action="store_true", help="Local dev mode: SQLite, no Redis")
    args = parser.parse_args(argv)

    _configure(args.local)
    asyncio.run(run_worker(args.concurrency))


def report_usage_main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="atelier-report-usage",
        description="Report unreported usage records to Stripe (run from cron)",
    )
    parser.add_argument("--local", action="store_true", help="Local dev mode: SQLite database")
    args = parser.parse_args(argv)

    _configure(args.local)
    try:
        summary = asyncio.run(run_usage_report())
    except Exception:
        logger.exception("Usage reporting failed")
        sys.exit(1)
    print(summary.model_dump_json())


if __name__ == "__main__":
    worker_main()
