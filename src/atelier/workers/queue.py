"""Durable job queue backed by the relational store.

The ``jobs`` table is the source of truth. Every state change is a single
conditional UPDATE (compare-and-swap on state, lease owner and attempts), so
any number of worker processes can share one queue. Redis, when configured,
only carries wake-up notifications so idle workers do not have to wait for
their next poll.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atelier.db.models.job import JobRow
from atelier.db.models.usage import UsageRecordRow
from atelier.errors.exceptions import AdmissionDenied, InvalidTransition, NotFoundError
from atelier.metrics import admission_denied_total, jobs_settled_total, jobs_submitted_total, leases_expired_total
from atelier.models.enums import USAGE_BY_KIND, JobKind, JobState
from atelier.repositories.job_repo import JobRepository
from atelier.repositories.tenant_repo import BillingCycleRepository
from atelier.services.admission import AdmissionController
from atelier.services.id_generator import generate_id

logger = logging.getLogger(__name__)

READY_KEY = "atelier:jobs:ready"
# Busy workers never pop wake-ups, so the list is trimmed to the newest entries
MAX_PENDING_WAKEUPS = 100
LEASE_EXPIRED = "LEASE_EXPIRED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_detail(code: str, message: str, retryable: bool, attempt: int, now: datetime) -> dict:
    return {
        "code": code,
        "message": message,
        "retryable": retryable,
        "attempt": attempt,
        "timestamp": now.isoformat(),
    }


class JobQueue:
    """Submit, claim and settle jobs.

    Usage:
        queue = JobQueue(session_factory, AdmissionController(), lease_timeout_seconds=300)
        job_id = await queue.submit("tnt_1", JobKind.GENERATE, {"prompt": "a red fox"})

        job = await queue.dequeue("worker-1")
        await queue.complete(job.job_id, "worker-1", {"image_url": "..."})
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        admission: AdmissionController | None = None,
        lease_timeout_seconds: float = 300,
        max_attempts: int = 3,
        redis=None,
        claim_batch: int = 10,
    ):
        self.session_factory = session_factory
        self.admission = admission or AdmissionController()
        self.lease_timeout = timedelta(seconds=lease_timeout_seconds)
        self.max_attempts = max_attempts
        self.redis = redis
        self.claim_batch = claim_batch

    @classmethod
    def from_settings(cls, session_factory, settings, redis=None) -> "JobQueue":
        return cls(
            session_factory,
            admission=AdmissionController(default_usage_limit=settings.default_usage_limit),
            lease_timeout_seconds=settings.lease_timeout_seconds,
            max_attempts=settings.max_attempts,
            redis=redis,
        )

    async def submit(
        self,
        tenant_id: str,
        kind: JobKind | str,
        payload: dict[str, Any],
        parent_job_id: str | None = None,
    ) -> str:
        """Admit and persist a new queued job. Returns its id.

        Raises AdmissionDenied without writing anything if the tenant is refused.
        """
        kind = JobKind(kind)
        async with self.session_factory() as session:
            decision = await self.admission.check(session, tenant_id, kind)
            if not decision.allowed:
                await session.rollback()
                admission_denied_total.labels(str(decision.reason)).inc()
                raise AdmissionDenied(str(decision.reason))

            job_id = generate_id("job_")
            now = _utcnow()
            await JobRepository(session).create(
                job_id=job_id,
                tenant_id=tenant_id,
                kind=str(kind),
                payload=dict(payload),
                state=JobState.QUEUED,
                attempts=0,
                parent_job_id=parent_job_id,
                created_at=now,
                updated_at=now,
            )
            await session.commit()

        jobs_submitted_total.labels(str(kind)).inc()
        logger.info("Job %s queued (tenant=%s, kind=%s)", job_id, tenant_id, kind)
        await self._notify(job_id)
        return job_id

    async def dequeue(self, worker_id: str, now: datetime | None = None) -> JobRow | None:
        """Claim the oldest queued job for ``worker_id``, or return None."""
        now = now or _utcnow()
        async with self.session_factory() as session:
            repo = JobRepository(session)
            for job_id in await repo.oldest_queued_ids(self.claim_batch):
                claimed = await repo.transition(
                    job_id,
                    JobState.QUEUED,
                    {
                        "state": JobState.ACTIVE,
                        "lease_owner": worker_id,
                        "lease_expires_at": now + self.lease_timeout,
                        "updated_at": now,
                    },
                )
                if not claimed:
                    # Another worker won this one
                    continue
                job = await repo.get(job_id)
                await session.commit()
                logger.info("Job %s claimed by %s (attempts=%d)", job_id, worker_id, job.attempts)
                return job
            await session.rollback()
        return None

    async def complete(
        self,
        job_id: str,
        worker_id: str,
        result: dict[str, Any],
        now: datetime | None = None,
    ) -> None:
        """Move an active job leased to ``worker_id`` to completed.

        Billable kinds get their usage record in the same transaction.
        """
        now = now or _utcnow()
        async with self.session_factory() as session:
            repo = JobRepository(session)
            job = await self._load_active(repo, job_id, worker_id)
            changed = await repo.transition(
                job_id,
                JobState.ACTIVE,
                {
                    "state": JobState.COMPLETED,
                    "result": result,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "updated_at": now,
                },
                lease_owner=worker_id,
            )
            if not changed:
                await session.rollback()
                raise InvalidTransition(job_id, f"Job {job_id} is no longer leased to {worker_id}")

            usage = USAGE_BY_KIND.get(JobKind(job.kind))
            if usage is not None:
                event_type, quantity = usage
                cycle = await BillingCycleRepository(session).current(job.tenant_id, now)
                session.add(UsageRecordRow(
                    usage_id=generate_id("use_"),
                    tenant_id=job.tenant_id,
                    job_id=job_id,
                    event_type=str(event_type),
                    quantity=quantity,
                    billing_cycle_id=cycle.cycle_id if cycle is not None else None,
                    created_at=now,
                ))
            await session.commit()

        jobs_settled_total.labels(job.kind, JobState.COMPLETED).inc()
        logger.info("Job %s completed by %s", job_id, worker_id)

    async def fail(
        self,
        job_id: str,
        worker_id: str,
        error: Exception,
        retryable: bool,
        now: datetime | None = None,
    ) -> JobState:
        """Record a failed execution. Returns the state the job moved to.

        A retryable failure with attempts left requeues the job; anything else
        is terminal.
        """
        now = now or _utcnow()
        code = getattr(error, "code", type(error).__name__)
        message = getattr(error, "message", None) or str(error)
        async with self.session_factory() as session:
            repo = JobRepository(session)
            job = await self._load_active(repo, job_id, worker_id)
            new_state = await self._settle_failure(
                repo, job, code, message, retryable, now, lease_owner=worker_id,
            )
            if new_state is None:
                await session.rollback()
                raise InvalidTransition(job_id, f"Job {job_id} is no longer leased to {worker_id}")
            await session.commit()

        jobs_settled_total.labels(job.kind, new_state).inc()
        if new_state == JobState.QUEUED:
            logger.warning("Job %s requeued after %s: %s", job_id, code, message)
            await self._notify(job_id)
        else:
            logger.warning("Job %s failed permanently (%s): %s", job_id, code, message)
        return new_state

    async def renew_lease(self, job_id: str, worker_id: str, now: datetime | None = None) -> bool:
        """Extend the lease held by ``worker_id``. False if it was lost."""
        now = now or _utcnow()
        async with self.session_factory() as session:
            renewed = await JobRepository(session).transition(
                job_id,
                JobState.ACTIVE,
                {"lease_expires_at": now + self.lease_timeout, "updated_at": now},
                lease_owner=worker_id,
            )
            await session.commit()
        return renewed

    async def requeue_expired(self, now: datetime | None = None) -> list[str]:
        """Treat every expired lease as a retryable failure. Returns affected job ids."""
        now = now or _utcnow()
        reclaimed: list[str] = []
        async with self.session_factory() as session:
            repo = JobRepository(session)
            for job_id, owner in await repo.expired_leases(now):
                job = await repo.get(job_id)
                if job is None:
                    continue
                new_state = await self._settle_failure(
                    repo,
                    job,
                    LEASE_EXPIRED,
                    f"Lease held by {owner} expired",
                    True,
                    now,
                    lease_owner=owner,
                    extra_conditions=(JobRow.lease_expires_at < now,),
                )
                await session.commit()
                if new_state is None:
                    # Settled or renewed by its worker in the meantime
                    continue
                reclaimed.append(job_id)
                leases_expired_total.inc()
                jobs_settled_total.labels(job.kind, new_state).inc()
                logger.warning(
                    "Job %s lease expired (owner=%s), now %s", job_id, owner, new_state,
                )
                if new_state == JobState.QUEUED:
                    await self._notify(job_id)
        return reclaimed

    async def wait_for_work(self, timeout: float) -> None:
        """Block until a wake-up notification arrives or ``timeout`` passes."""
        await self.redis.blpop([READY_KEY], timeout=timeout)

    async def _load_active(self, repo: JobRepository, job_id: str, worker_id: str) -> JobRow:
        job = await repo.get(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        if job.state != JobState.ACTIVE:
            raise InvalidTransition(job_id, f"Job {job_id} is {job.state}, not active")
        if job.lease_owner != worker_id:
            raise InvalidTransition(
                job_id, f"Job {job_id} is leased to {job.lease_owner}, not {worker_id}"
            )
        return job

    async def _settle_failure(
        self,
        repo: JobRepository,
        job: JobRow,
        code: str,
        message: str,
        retryable: bool,
        now: datetime,
        lease_owner: str | None,
        extra_conditions: tuple = (),
    ) -> JobState | None:
        """Apply the retry-or-fail rule. Returns the new state, or None if the CAS lost."""
        requeue = retryable and job.attempts < self.max_attempts
        attempt = job.attempts + 1
        detail = _error_detail(code, message, retryable, attempt, now)
        values: dict[str, Any] = {
            "attempts": attempt,
            "last_error": detail,
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        if requeue:
            values["state"] = JobState.QUEUED
        else:
            values["state"] = JobState.FAILED
            values["error"] = detail
        changed = await repo.transition(
            job.job_id,
            JobState.ACTIVE,
            values,
            lease_owner=lease_owner,
            extra_conditions=(JobRow.attempts == job.attempts, *extra_conditions),
        )
        if not changed:
            return None
        return values["state"]

    async def _notify(self, job_id: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.rpush(READY_KEY, job_id)
            await self.redis.ltrim(READY_KEY, -MAX_PENDING_WAKEUPS, -1)
        except Exception as exc:
            logger.warning("Failed to publish wake-up for job %s: %s", job_id, exc)
