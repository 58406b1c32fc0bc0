"""Usage record table (shadow ledger of billable events)."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from atelier.db.base import Base, utcnow


class UsageRecordRow(Base):
    __tablename__ = "usage_records"

    usage_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), ForeignKey("tenants.tenant_id"), nullable=False, index=True)
    job_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    billing_cycle_id: Mapped[str | None] = mapped_column(
        String(128), ForeignKey("billing_cycles.cycle_id"), nullable=True, index=True
    )
    report_key: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    external_usage_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
