"""External billing system client (Stripe metered billing)."""

import asyncio
import logging
from typing import Protocol

import stripe

from atelier.db.models.tenant import TenantRow
from atelier.models.enums import BillingStatus

logger = logging.getLogger(__name__)

_STRIPE_STATUS_MAP = {
    "active": BillingStatus.ACTIVE,
    "trialing": BillingStatus.TRIALING,
    "past_due": BillingStatus.PAST_DUE,
    "unpaid": BillingStatus.PAST_DUE,
    "canceled": BillingStatus.CANCELED,
    "incomplete_expired": BillingStatus.CANCELED,
}


def billing_status_from_stripe(status: str | None) -> BillingStatus:
    """Map a Stripe subscription status onto the tenant billing view."""
    return _STRIPE_STATUS_MAP.get(status or "", BillingStatus.INACTIVE)


class BillingClient(Protocol):
    async def report_usage(
        self,
        tenant: TenantRow,
        event_type: str,
        quantity: int,
        idempotency_key: str,
    ) -> str:
        """Report ``quantity`` units and return the external usage id."""
        ...

    async def check_subscription_status(self, tenant: TenantRow) -> BillingStatus:
        ...


class BillingConfigurationError(RuntimeError):
    pass


class StripeBillingClient:
    """Reports usage as Stripe billing meter events.

    The idempotency key is sent both as the meter event ``identifier`` (Stripe
    deduplicates events per identifier) and as the request idempotency key, so
    a retried batch is never charged twice.
    """

    def __init__(self, api_key: str):
        if not api_key:
            raise BillingConfigurationError("Stripe secret key is not configured")
        self.api_key = api_key

    async def report_usage(
        self,
        tenant: TenantRow,
        event_type: str,
        quantity: int,
        idempotency_key: str,
    ) -> str:
        if not tenant.stripe_customer_id:
            raise BillingConfigurationError(f"Tenant {tenant.tenant_id} has no Stripe customer")

        event = await asyncio.to_thread(
            stripe.billing.MeterEvent.create,
            api_key=self.api_key,
            idempotency_key=idempotency_key,
            event_name=event_type,
            identifier=idempotency_key,
            payload={
                "stripe_customer_id": tenant.stripe_customer_id,
                "value": str(quantity),
            },
        )
        logger.info(
            "Reported %d %s to Stripe for tenant %s", quantity, event_type, tenant.tenant_id,
        )
        return getattr(event, "identifier", None) or idempotency_key

    async def check_subscription_status(self, tenant: TenantRow) -> BillingStatus:
        if not tenant.stripe_subscription_id:
            return BillingStatus.INACTIVE
        subscription = await asyncio.to_thread(
            stripe.Subscription.retrieve,
            tenant.stripe_subscription_id,
            api_key=self.api_key,
        )
        return billing_status_from_stripe(subscription.status)
