"""Tenant and billing cycle repositories."""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.db.models.tenant import BillingCycleRow, TenantRow
from atelier.models.enums import BILLABLE_STATUSES
from atelier.repositories.base import BaseRepository


class TenantRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, TenantRow)

    async def get(self, tenant_id: str) -> TenantRow | None:
        return await self.get_by_id("tenant_id", tenant_id)

    async def lock(self, tenant_id: str) -> bool:
        """Take a write lock on the tenant row for the rest of the transaction.

        A self-assigning UPDATE changes no data but locks the row on PostgreSQL
        and the database on SQLite, so concurrent admissions for one tenant run
        one after another. Returns False if the tenant does not exist.
        """
        stmt = (
            update(TenantRow)
            .where(TenantRow.tenant_id == tenant_id)
            .values(updated_at=TenantRow.updated_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get_by_customer(self, stripe_customer_id: str) -> TenantRow | None:
        return await self.get_by_id("stripe_customer_id", stripe_customer_id)

    async def list_billable(self) -> list[TenantRow]:
        """Tenants with an active subscription, ordered for stable reporting."""
        stmt = (
            select(TenantRow)
            .where(
                TenantRow.billing_status.in_([str(s) for s in BILLABLE_STATUSES]),
                TenantRow.stripe_subscription_id.is_not(None),
            )
            .order_by(TenantRow.tenant_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class BillingCycleRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, BillingCycleRow)

    async def get(self, cycle_id: str) -> BillingCycleRow | None:
        return await self.get_by_id("cycle_id", cycle_id)

    async def current(self, tenant_id: str, now: datetime) -> BillingCycleRow | None:
        """The cycle whose period contains ``now``, latest start first."""
        stmt = (
            select(BillingCycleRow)
            .where(
                BillingCycleRow.tenant_id == tenant_id,
                BillingCycleRow.period_start <= now,
                BillingCycleRow.period_end > now,
            )
            .order_by(BillingCycleRow.period_start.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find(self, tenant_id: str, period_start: datetime) -> BillingCycleRow | None:
        stmt = select(BillingCycleRow).where(
            BillingCycleRow.tenant_id == tenant_id,
            BillingCycleRow.period_start == period_start,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()
