"""SQLAlchemy ORM models - import all to register with Base.metadata."""

from atelier.db.models.job import JobRow
from atelier.db.models.tenant import BillingCycleRow, TenantRow
from atelier.db.models.usage import UsageRecordRow
from atelier.db.models.webhook_event import WebhookEventRow

__all__ = [
    "JobRow",
    "TenantRow",
    "BillingCycleRow",
    "UsageRecordRow",
    "WebhookEventRow",
]
