"""Usage reporting: reconcile the usage ledger with the external billing system.

Run periodically (cron) via ``atelier-report-usage``. Each pass:

1. selects tenants with active billing and a subscription,
2. optionally re-checks the subscription with the billing system,
3. re-sends batches pinned by an earlier pass that were never marked,
4. groups up to ``batch_size`` new unreported records by event type,
5. pins each group to a content-derived idempotency key in a committed UPDATE,
6. reports the group once under that key,
7. stamps the records with the returned external usage id.

A crash between steps 6 and 7 leaves the records pinned but unreported. The
next pass re-sends exactly that pinned batch under the same key, whatever new
usage has arrived since, and the billing system deduplicates the report. A
failure in one batch or tenant is logged and the pass moves on.
"""

import hashlib
import logging
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atelier.db.models.tenant import TenantRow
from atelier.db.models.usage import UsageRecordRow
from atelier.integrations.billing import BillingClient
from atelier.metrics import usage_records_reported_total
from atelier.models.billing import UsageReportSummary
from atelier.models.enums import BILLABLE_STATUSES
from atelier.repositories.tenant_repo import TenantRepository
from atelier.repositories.usage_repo import UsageRecordRepository

logger = logging.getLogger(__name__)


def usage_idempotency_key(tenant_id: str, event_type: str, usage_ids: list[str]) -> str:
    """Deterministic key for a batch: same tenant, type and records give the same key."""
    digest = hashlib.sha256()
    digest.update(tenant_id.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(event_type.encode("utf-8"))
    for usage_id in sorted(usage_ids):
        digest.update(b"\x00")
        digest.update(usage_id.encode("utf-8"))
    return f"usage_{digest.hexdigest()[:48]}"


class UsageReporter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        billing: BillingClient,
        batch_size: int = 100,
        verify_subscriptions: bool = True,
    ):
        self.session_factory = session_factory
        self.billing = billing
        self.batch_size = batch_size
        self.verify_subscriptions = verify_subscriptions

    async def run_once(self) -> UsageReportSummary:
        summary = UsageReportSummary()

        async with self.session_factory() as session:
            tenants = await TenantRepository(session).list_billable()
        logger.info("Found %d active tenants with subscriptions", len(tenants))

        for tenant in tenants:
            summary.tenants_seen += 1
            try:
                await self._report_tenant(tenant, summary)
            except Exception as exc:
                logger.exception("Usage reporting failed for tenant %s", tenant.tenant_id)
                summary.failures.append({"tenant_id": tenant.tenant_id, "error": str(exc)})

        logger.info(
            "Usage reporting complete: %d records in %d groups (%d groups failed)",
            summary.records_reported, summary.groups_reported, summary.groups_failed,
        )
        return summary

    async def _report_tenant(self, tenant: TenantRow, summary: UsageReportSummary) -> None:
        if self.verify_subscriptions and not await self._subscription_active(tenant):
            summary.tenants_skipped += 1
            return

        async with self.session_factory() as session:
            repo = UsageRecordRepository(session)
            pending = await repo.list_pinned(tenant.tenant_id)
            fresh = await repo.list_unpinned(tenant.tenant_id, self.batch_size)
        if not pending and not fresh:
            return

        logger.info(
            "Processing %d unreported records for tenant %s (%d from earlier passes)",
            len(pending) + len(fresh), tenant.tenant_id, len(pending),
        )
        retries: dict[str, list[UsageRecordRow]] = defaultdict(list)
        for record in pending:
            retries[record.report_key].append(record)
        grouped: dict[str, list[UsageRecordRow]] = defaultdict(list)
        for record in fresh:
            grouped[record.event_type].append(record)

        # Batches pinned by an earlier pass are re-sent first, under their original key
        batches = [(group[0].event_type, key, group) for key, group in retries.items()]
        batches += [(event_type, None, group) for event_type, group in grouped.items()]

        for event_type, key, group in batches:
            try:
                if key is None:
                    key, group = await self._pin_batch(tenant, event_type, group)
                    if not group:
                        continue
                marked = await self._report_batch(tenant, event_type, key, group)
            except Exception as exc:
                logger.exception(
                    "Error reporting %s usage for tenant %s", event_type, tenant.tenant_id,
                )
                summary.groups_failed += 1
                summary.failures.append({
                    "tenant_id": tenant.tenant_id,
                    "event_type": event_type,
                    "error": str(exc),
                })
                continue
            summary.groups_reported += 1
            summary.records_reported += marked

    async def _pin_batch(
        self, tenant: TenantRow, event_type: str, records: list[UsageRecordRow]
    ) -> tuple[str, list[UsageRecordRow]]:
        """Commit the batch assignment before anything is sent to the billing system."""
        usage_ids = [r.usage_id for r in records]
        key = usage_idempotency_key(tenant.tenant_id, event_type, usage_ids)
        async with self.session_factory() as session:
            repo = UsageRecordRepository(session)
            pinned = await repo.pin(usage_ids, key)
            await session.commit()
            if pinned != len(usage_ids):
                # A concurrent pass claimed some of them first
                records = await repo.list_pinned(tenant.tenant_id, key)
        return key, records

    async def _report_batch(
        self, tenant: TenantRow, event_type: str, key: str, records: list[UsageRecordRow]
    ) -> int:
        usage_ids = [r.usage_id for r in records]
        quantity = sum(r.quantity for r in records)

        external_usage_id = await self.billing.report_usage(tenant, event_type, quantity, key)

        async with self.session_factory() as session:
            marked = await UsageRecordRepository(session).mark_reported(
                usage_ids, external_usage_id, datetime.now(timezone.utc)
            )
            await session.commit()

        usage_records_reported_total.labels(event_type).inc(marked)
        if marked != len(usage_ids):
            logger.warning(
                "Only %d of %d %s records marked for tenant %s (already reported elsewhere)",
                marked, len(usage_ids), event_type, tenant.tenant_id,
            )
        logger.info(
            "Reported %d units of %s for tenant %s (external id %s)",
            quantity, event_type, tenant.tenant_id, external_usage_id,
        )
        return marked

    async def _subscription_active(self, tenant: TenantRow) -> bool:
        status = await self.billing.check_subscription_status(tenant)
        if status in BILLABLE_STATUSES:
            return True

        logger.warning(
            "Tenant %s subscription is %s; updating billing status and skipping",
            tenant.tenant_id, status,
        )
        async with self.session_factory() as session:
            row = await TenantRepository(session).get(tenant.tenant_id)
            if row is not None:
                row.billing_status = str(status)
                await session.commit()
        return False
