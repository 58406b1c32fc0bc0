"""Background task that returns jobs with expired leases to the queue."""

import asyncio
import logging

logger = logging.getLogger(__name__)


async def run_lease_reaper(queue, interval: float, stop_event: asyncio.Event) -> None:
    """Periodically requeue (or fail) jobs whose worker stopped renewing the lease."""
    logger.info("Lease reaper started (interval=%.0fs)", interval)

    while not stop_event.is_set():
        try:
            reclaimed = await queue.requeue_expired()
            if reclaimed:
                logger.info("Reaper reclaimed %d expired job(s)", len(reclaimed))
        except Exception as exc:
            logger.exception("Reaper error: %s", exc)
            # Continue running despite errors

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Lease reaper stopped")
