"""Worker pull loop and the per-process pool that runs several of them."""

import asyncio
import logging
import os
import socket
from collections.abc import Callable

from atelier.db.models.job import JobRow
from atelier.errors.exceptions import ExecutionError, InvalidTransition, PermanentExecutionError
from atelier.logging_config import bind_job_context, clear_context
from atelier.models.enums import JobState
from atelier.workers.base import BaseJobHandler, HandlerContext
from atelier.workers.queue import JobQueue
from atelier.workers.reaper import run_lease_reaper
from atelier.workers.registry import get_handler

logger = logging.getLogger(__name__)


class Worker:
    """Independent pull loop: dequeue -> handler -> complete/fail.

    ``stop()`` only prevents new claims. A job already in progress runs to
    completion unless the surrounding task is cancelled, in which case its
    lease is left to expire and the reaper requeues it.
    """

    def __init__(
        self,
        worker_id: str,
        queue: JobQueue,
        context: HandlerContext,
        poll_interval: float = 2.0,
        handler_lookup: Callable[[str], BaseJobHandler | None] = get_handler,
    ):
        self.worker_id = worker_id
        self.queue = queue
        self.context = context
        self.poll_interval = poll_interval
        self.handler_lookup = handler_lookup
        self.heartbeat_interval = max(queue.lease_timeout.total_seconds() / 3, 0.05)
        self.current_job_id: str | None = None
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        self._stopping.set()

    async def run(self) -> None:
        logger.info("Worker %s started", self.worker_id)
        while not self._stopping.is_set():
            try:
                job = await self.queue.dequeue(self.worker_id)
            except Exception:
                logger.exception("Worker %s failed to dequeue", self.worker_id)
                await self._idle()
                continue

            if job is None:
                await self._idle()
                continue

            try:
                await self.execute(job)
            except Exception:
                # Lease is left to expire; the reaper requeues the job
                logger.exception("Worker %s could not settle job %s", self.worker_id, job.job_id)
        logger.info("Worker %s stopped", self.worker_id)

    async def execute(self, job: JobRow) -> JobState | None:
        """Run one claimed job and settle it. Returns the state it moved to."""
        self.current_job_id = job.job_id
        bind_job_context(job.job_id, job.tenant_id, self.worker_id)
        heartbeat = asyncio.create_task(self._heartbeat(job.job_id))
        try:
            handler = self.handler_lookup(job.kind)
            if handler is None:
                raise PermanentExecutionError(f"No handler for job kind '{job.kind}'", "UNKNOWN_KIND")
            result = await handler.process(job, self.context)
        except ExecutionError as exc:
            return await self._settle_failure(job, exc, exc.retryable)
        except Exception as exc:
            logger.exception("Unclassified error in job %s", job.job_id)
            return await self._settle_failure(job, exc, True)
        else:
            try:
                await self.queue.complete(job.job_id, self.worker_id, result)
            except InvalidTransition as exc:
                self._log_lost_lease(exc)
                return None
            return JobState.COMPLETED
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            self.current_job_id = None
            clear_context()

    async def _settle_failure(self, job: JobRow, exc: Exception, retryable: bool) -> JobState | None:
        try:
            return await self.queue.fail(job.job_id, self.worker_id, exc, retryable)
        except InvalidTransition as lost:
            self._log_lost_lease(lost)
            return None

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                renewed = await self.queue.renew_lease(job_id, self.worker_id)
            except Exception as exc:
                logger.warning("Lease renewal for job %s failed: %s", job_id, exc)
                continue
            if not renewed:
                logger.warning("Worker %s lost the lease on job %s", self.worker_id, job_id)
                return

    async def _idle(self) -> None:
        if self.queue.redis is not None:
            try:
                await self.queue.wait_for_work(self.poll_interval)
                return
            except Exception as exc:
                logger.warning("Wake-up wait failed, falling back to polling: %s", exc)
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    def _log_lost_lease(self, exc: InvalidTransition) -> None:
        logger.error(
            "job_invariant_violation: worker %s could not settle job %s: %s",
            self.worker_id, exc.job_id, exc.message,
        )


class WorkerPool:
    """Run ``concurrency`` workers and one lease reaper in this process."""

    def __init__(
        self,
        queue: JobQueue,
        context: HandlerContext,
        concurrency: int = 2,
        poll_interval: float = 2.0,
        reaper_interval: float = 30.0,
        name_prefix: str | None = None,
    ):
        prefix = name_prefix or f"{socket.gethostname()}-{os.getpid()}"
        self.queue = queue
        self.reaper_interval = reaper_interval
        self.workers = [
            Worker(f"{prefix}-{i}", queue, context, poll_interval=poll_interval)
            for i in range(concurrency)
        ]
        self._reaper_stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._reaper_task: asyncio.Task | None = None

    def start(self) -> None:
        self._tasks = [asyncio.create_task(w.run(), name=w.worker_id) for w in self.workers]
        self._reaper_task = asyncio.create_task(
            run_lease_reaper(self.queue, self.reaper_interval, self._reaper_stop)
        )
        logger.info("Worker pool started (concurrency=%d)", len(self.workers))

    def stop(self) -> None:
        """Stop claiming new jobs. Running jobs keep going."""
        logger.info("Worker pool stopping")
        for worker in self.workers:
            worker.stop()
        self._reaper_stop.set()

    async def wait_stopped(self, grace_seconds: float) -> None:
        """Wait up to ``grace_seconds`` for workers to drain, then cancel the rest."""
        tasks = list(self._tasks)
        if self._reaper_task is not None:
            tasks.append(self._reaper_task)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            logger.warning("Cancelling %s after %.0fs grace period", task.get_name(), grace_seconds)
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Worker pool stopped")
