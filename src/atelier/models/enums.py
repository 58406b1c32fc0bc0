"""String enums shared by the ORM rows, API models and services."""

from enum import StrEnum


class JobKind(StrEnum):
    GENERATE = "generate"
    INPAINT = "inpaint"
    DESCRIBE = "describe"
    UPLOAD_POSTPROCESS = "upload-postprocess"


class JobState(StrEnum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BillingStatus(StrEnum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"


class AdmissionReason(StrEnum):
    BILLING_INACTIVE = "billing_inactive"
    QUOTA_EXCEEDED = "quota_exceeded"
    TENANT_UNKNOWN = "tenant_unknown"


class UsageEventType(StrEnum):
    AI_GENERATION = "ai_generation"
    AI_INPAINT = "ai_inpaint"
    AI_DESCRIPTION = "ai_description"


# Billing statuses that may submit work and get usage reported
BILLABLE_STATUSES = frozenset({BillingStatus.ACTIVE, BillingStatus.TRIALING})

# kind -> (usage event type, quantity); kinds missing here are not billed
USAGE_BY_KIND: dict[JobKind, tuple[UsageEventType, int]] = {
    JobKind.GENERATE: (UsageEventType.AI_GENERATION, 1),
    JobKind.INPAINT: (UsageEventType.AI_INPAINT, 1),
    JobKind.DESCRIBE: (UsageEventType.AI_DESCRIPTION, 1),
}
