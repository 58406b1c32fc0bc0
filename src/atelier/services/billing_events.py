"""Billing webhook ingress: verify Stripe signatures, then update tenant billing state."""

import json
import logging
from datetime import datetime, timezone
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.db.models.tenant import TenantRow
from atelier.db.models.webhook_event import WebhookEventRow
from atelier.integrations.billing import billing_status_from_stripe
from atelier.models.billing import WebhookVerification
from atelier.models.enums import BillingStatus
from atelier.repositories.tenant_repo import BillingCycleRepository, TenantRepository
from atelier.services.id_generator import generate_id

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}


def verify_webhook(
    payload: bytes,
    signature: str | None,
    secret: str,
    tolerance: int = 300,
) -> WebhookVerification:
    """Check the Stripe-Signature header before anything is parsed or dispatched."""
    if not signature:
        return WebhookVerification.reject("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        return WebhookVerification.reject("Payload is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        return WebhookVerification.reject(f"Invalid signature: {exc}")

    try:
        event = json.loads(body)
    except json.JSONDecodeError as exc:
        return WebhookVerification.reject(f"Invalid payload: {exc}")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        return WebhookVerification.reject("Payload is not a Stripe event")
    return WebhookVerification.accept(event)


async def apply_billing_event(session: AsyncSession, event: dict[str, Any]) -> bool:
    """Apply a verified event to the tenant billing view.

    Returns False if the event id was already processed. The caller commits.
    """
    event_id = event["id"]
    event_type = event["type"]

    if await session.get(WebhookEventRow, event_id) is not None:
        logger.info("Duplicate webhook event %s (%s) ignored", event_id, event_type)
        return False
    session.add(WebhookEventRow(event_id=event_id, event_type=event_type))

    obj = (event.get("data") or {}).get("object") or {}
    if event_type in SUBSCRIPTION_EVENTS:
        await _apply_subscription(session, event_type, obj)
    elif event_type == "invoice.paid":
        await _set_status_for_customer(session, obj.get("customer"), BillingStatus.ACTIVE)
    elif event_type == "invoice.payment_failed":
        await _set_status_for_customer(session, obj.get("customer"), BillingStatus.PAST_DUE)
    else:
        logger.debug("Unhandled webhook event type %s", event_type)

    await session.flush()
    return True


async def _find_tenant(session: AsyncSession, obj: dict) -> TenantRow | None:
    repo = TenantRepository(session)
    customer_id = obj.get("customer")
    if customer_id:
        tenant = await repo.get_by_customer(customer_id)
        if tenant is not None:
            return tenant

    tenant_id = (obj.get("metadata") or {}).get("tenant_id")
    if tenant_id:
        tenant = await repo.get(tenant_id)
        if tenant is not None and customer_id and not tenant.stripe_customer_id:
            tenant.stripe_customer_id = customer_id
        return tenant
    return None


async def _apply_subscription(session: AsyncSession, event_type: str, subscription: dict) -> None:
    tenant = await _find_tenant(session, subscription)
    if tenant is None:
        logger.warning(
            "Subscription %s for unknown customer %s", subscription.get("id"), subscription.get("customer"),
        )
        return

    if event_type == "customer.subscription.deleted":
        tenant.billing_status = BillingStatus.CANCELED
        tenant.stripe_subscription_id = None
        logger.info("Tenant %s subscription canceled", tenant.tenant_id)
        return

    tenant.billing_status = billing_status_from_stripe(subscription.get("status"))
    tenant.stripe_subscription_id = subscription.get("id")
    logger.info("Tenant %s billing status now %s", tenant.tenant_id, tenant.billing_status)

    period = _current_period(subscription)
    if period is not None:
        await _upsert_cycle(session, tenant, subscription, *period)


def _current_period(subscription: dict) -> tuple[datetime, datetime] | None:
    """Current period bounds, on the subscription or (newer API versions) its first item."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    if start is None or end is None:
        return None
    return (
        datetime.fromtimestamp(int(start), tz=timezone.utc),
        datetime.fromtimestamp(int(end), tz=timezone.utc),
    )


async def _upsert_cycle(
    session: AsyncSession,
    tenant: TenantRow,
    subscription: dict,
    period_start: datetime,
    period_end: datetime,
) -> None:
    raw_limit = (subscription.get("metadata") or {}).get("usage_limit")
    usage_limit = int(raw_limit) if raw_limit not in (None, "") else None

    repo = BillingCycleRepository(session)
    cycle = await repo.find(tenant.tenant_id, period_start)
    if cycle is None:
        await repo.create(
            cycle_id=generate_id("cyc_"),
            tenant_id=tenant.tenant_id,
            period_start=period_start,
            period_end=period_end,
            usage_limit=usage_limit,
            stripe_subscription_id=subscription.get("id"),
        )
        logger.info("Opened billing cycle for tenant %s starting %s", tenant.tenant_id, period_start)
    else:
        await repo.update(cycle, period_end=period_end, usage_limit=usage_limit)


async def _set_status_for_customer(session: AsyncSession, customer_id: str | None, status: BillingStatus) -> None:
    if not customer_id:
        return
    tenant = await TenantRepository(session).get_by_customer(customer_id)
    if tenant is None:
        logger.warning("Invoice event for unknown customer %s", customer_id)
        return
    if tenant.billing_status == BillingStatus.CANCELED:
        return
    tenant.billing_status = status
    logger.info("Tenant %s billing status now %s", tenant.tenant_id, status)
