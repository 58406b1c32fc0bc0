"""Models for admission decisions, usage reporting and webhook verification."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from atelier.models.enums import AdmissionReason


class AdmissionDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: AdmissionReason | None = None

    @classmethod
    def allow(cls) -> "AdmissionDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: AdmissionReason) -> "AdmissionDecision":
        return cls(allowed=False, reason=reason)


class UsageReportSummary(BaseModel):
    """Outcome of one usage reporting pass."""

    tenants_seen: int = 0
    tenants_skipped: int = 0
    groups_reported: int = 0
    groups_failed: int = 0
    records_reported: int = 0
    failures: list[dict[str, str]] = Field(default_factory=list)


class WebhookVerification(BaseModel):
    """Result of checking a billing webhook before any event is dispatched."""

    model_config = ConfigDict(frozen=True)

    verified: bool
    event: dict[str, Any] | None = None
    reason: str | None = None

    @classmethod
    def accept(cls, event: dict[str, Any]) -> "WebhookVerification":
        return cls(verified=True, event=event)

    @classmethod
    def reject(cls, reason: str) -> "WebhookVerification":
        return cls(verified=False, reason=reason)
