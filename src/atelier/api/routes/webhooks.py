"""Billing provider webhook ingress."""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.config import settings
from atelier.dependencies import get_db
from atelier.errors.exceptions import AtelierError, SignatureVerificationFailed
from atelier.services.billing_events import apply_billing_event, verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])


@router.post("/webhooks/stripe")
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Verify the signature, then apply the event to tenant billing state."""
    if not settings.stripe_webhook_secret:
        raise AtelierError(
            "WEBHOOK_NOT_CONFIGURED", "Stripe webhook secret not configured", status_code=503,
        )

    # Raw body is required for signature verification
    body = await request.body()
    verification = verify_webhook(
        body, stripe_signature, settings.stripe_webhook_secret, settings.stripe_webhook_tolerance,
    )
    if not verification.verified:
        logger.warning("Rejected Stripe webhook: %s", verification.reason)
        raise SignatureVerificationFailed(verification.reason)

    event = verification.event
    processed = await apply_billing_event(db, event)
    await db.commit()
    return {"received": True, "event_id": event["id"], "duplicate": not processed}
