"""Usage record repository."""

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.db.models.usage import UsageRecordRow
from atelier.repositories.base import BaseRepository


class UsageRecordRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, UsageRecordRow)

    async def get(self, usage_id: str) -> UsageRecordRow | None:
        return await self.get_by_id("usage_id", usage_id)

    async def total_for_cycle(self, tenant_id: str, billing_cycle_id: str | None) -> int:
        stmt = select(func.coalesce(func.sum(UsageRecordRow.quantity), 0)).where(
            UsageRecordRow.tenant_id == tenant_id,
        )
        if billing_cycle_id is None:
            stmt = stmt.where(UsageRecordRow.billing_cycle_id.is_(None))
        else:
            stmt = stmt.where(UsageRecordRow.billing_cycle_id == billing_cycle_id)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_unpinned(self, tenant_id: str, limit: int) -> list[UsageRecordRow]:
        """Unreported records not yet assigned to a report batch."""
        stmt = (
            select(UsageRecordRow)
            .where(
                UsageRecordRow.tenant_id == tenant_id,
                UsageRecordRow.external_usage_id.is_(None),
                UsageRecordRow.report_key.is_(None),
            )
            .order_by(UsageRecordRow.created_at, UsageRecordRow.usage_id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_pinned(self, tenant_id: str, report_key: str | None = None) -> list[UsageRecordRow]:
        """Unreported records already assigned to a report batch, optionally one batch only."""
        stmt = select(UsageRecordRow).where(
            UsageRecordRow.tenant_id == tenant_id,
            UsageRecordRow.external_usage_id.is_(None),
            UsageRecordRow.report_key.is_not(None),
        )
        if report_key is not None:
            stmt = stmt.where(UsageRecordRow.report_key == report_key)
        stmt = stmt.order_by(UsageRecordRow.created_at, UsageRecordRow.usage_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def pin(self, usage_ids: list[str], report_key: str) -> int:
        """Assign records to the batch ``report_key``. Records already in a batch are skipped.

        Returns the number of records pinned.
        """
        stmt = (
            update(UsageRecordRow)
            .where(
                UsageRecordRow.usage_id.in_(usage_ids),
                UsageRecordRow.report_key.is_(None),
                UsageRecordRow.external_usage_id.is_(None),
            )
            .values(report_key=report_key)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def mark_reported(self, usage_ids: list[str], external_usage_id: str, now: datetime) -> int:
        """Set external_usage_id on records that do not have one yet.

        Returns the number of records marked. Already-reported records are left alone.
        """
        stmt = (
            update(UsageRecordRow)
            .where(
                UsageRecordRow.usage_id.in_(usage_ids),
                UsageRecordRow.external_usage_id.is_(None),
            )
            .values(external_usage_id=external_usage_id, reported_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount
