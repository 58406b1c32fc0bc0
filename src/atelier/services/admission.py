"""Admission control: gate job submission on tenant billing and quota state."""

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.billing import AdmissionDecision
from atelier.models.enums import BILLABLE_STATUSES, USAGE_BY_KIND, AdmissionReason, JobKind
from atelier.repositories.job_repo import JobRepository
from atelier.repositories.tenant_repo import BillingCycleRepository, TenantRepository
from atelier.repositories.usage_repo import UsageRecordRepository

logger = logging.getLogger(__name__)


class AdmissionController:
    """Decide whether a tenant may enqueue a job of a given kind.

    ``check`` must run inside the caller's transaction, before the job row is
    inserted, so that the quota snapshot and the insert commit together. The
    tenant row is locked first, which serializes concurrent submissions for
    the same tenant on databases that support row locks.
    """

    def __init__(self, default_usage_limit: int | None = None):
        self.default_usage_limit = default_usage_limit

    async def check(
        self,
        session: AsyncSession,
        tenant_id: str,
        kind: JobKind,
        now: datetime | None = None,
    ) -> AdmissionDecision:
        now = now or datetime.now(timezone.utc)

        tenants = TenantRepository(session)
        if not await tenants.lock(tenant_id):
            return AdmissionDecision.deny(AdmissionReason.TENANT_UNKNOWN)
        tenant = await tenants.get(tenant_id)
        if tenant is None:
            return AdmissionDecision.deny(AdmissionReason.TENANT_UNKNOWN)

        if tenant.billing_status not in BILLABLE_STATUSES:
            return AdmissionDecision.deny(AdmissionReason.BILLING_INACTIVE)

        cost = USAGE_BY_KIND.get(JobKind(kind))
        if cost is None:
            return AdmissionDecision.allow()

        cycle = await BillingCycleRepository(session).current(tenant_id, now)
        limit = cycle.usage_limit if cycle is not None else self.default_usage_limit
        if limit is None:
            return AdmissionDecision.allow()

        recorded = await UsageRecordRepository(session).total_for_cycle(
            tenant_id, cycle.cycle_id if cycle is not None else None
        )
        # Queued and active billable jobs will each produce one unit of usage
        in_flight = await JobRepository(session).count_in_flight(
            tenant_id, [str(k) for k in USAGE_BY_KIND]
        )
        _, quantity = cost
        if recorded + in_flight + quantity > limit:
            logger.info(
                "Quota exceeded for tenant %s (recorded=%d, in_flight=%d, limit=%d)",
                tenant_id, recorded, in_flight, limit,
            )
            return AdmissionDecision.deny(AdmissionReason.QUOTA_EXCEEDED)

        return AdmissionDecision.allow()
