"""Tests for Stripe webhook verification and billing state updates."""

import hashlib
import hmac
import json
import time

import pytest
from sqlalchemy import func, select

from atelier.config import settings
from atelier.db.models.tenant import BillingCycleRow, TenantRow
from atelier.db.models.webhook_event import WebhookEventRow
from atelier.errors.exceptions import AdmissionDenied
from atelier.models.enums import AdmissionReason, JobKind
from atelier.services.billing_events import verify_webhook

SECRET = "whsec_test_secret"
WEBHOOK_URL = "/api/v1/webhooks/stripe"


def _sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.".encode("utf-8") + payload
    sig = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def _event(event_type: str, obj: dict, event_id: str = "evt_001") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


def _subscription(status: str = "active", usage_limit: str | None = "5") -> dict:
    now = int(time.time())
    sub = {
        "id": "sub_new",
        "object": "subscription",
        "customer": "cus_new",
        "status": status,
        "current_period_start": now - 3600,
        "current_period_end": now + 30 * 86400,
        "metadata": {},
    }
    if usage_limit is not None:
        sub["metadata"]["usage_limit"] = usage_limit
    return sub


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", SECRET)
    return SECRET


async def _post(client, payload: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return await client.post(WEBHOOK_URL, content=payload, headers=headers)


async def _tenant(session_factory, tenant_id: str) -> TenantRow:
    async with session_factory() as session:
        return await session.get(TenantRow, tenant_id)


def test_verify_accepts_valid_signature():
    payload = _event("invoice.paid", {"customer": "cus_1"})
    result = verify_webhook(payload, _sign(payload), SECRET)
    assert result.verified
    assert result.event["type"] == "invoice.paid"


@pytest.mark.parametrize(
    "signature",
    [
        None,
        "",
        "t=123,v1=deadbeef",
        "garbage",
    ],
)
def test_verify_rejects_bad_signatures(signature):
    payload = _event("invoice.paid", {"customer": "cus_1"})
    result = verify_webhook(payload, signature, SECRET)
    assert not result.verified
    assert result.event is None
    assert result.reason


def test_verify_rejects_wrong_secret_and_stale_timestamp():
    payload = _event("invoice.paid", {"customer": "cus_1"})
    assert not verify_webhook(payload, _sign(payload, secret="whsec_other"), SECRET).verified
    stale = _sign(payload, timestamp=int(time.time()) - 3600)
    assert not verify_webhook(payload, stale, SECRET, tolerance=300).verified


def test_verify_rejects_tampered_body():
    payload = _event("invoice.paid", {"customer": "cus_1"})
    signature = _sign(payload)
    tampered = payload.replace(b"cus_1", b"cus_2")
    assert not verify_webhook(tampered, signature, SECRET).verified


@pytest.mark.asyncio
async def test_route_rejects_invalid_signature(client, webhook_secret, seed_tenant, session_factory):
    await seed_tenant("tnt_new", billing_status="inactive", customer_id="cus_new")
    payload = _event("customer.subscription.created", _subscription())

    response = await _post(client, payload, _sign(payload, secret="whsec_forged"))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "SIGNATURE_VERIFICATION_FAILED"
    assert (await _tenant(session_factory, "tnt_new")).billing_status == "inactive"
    async with session_factory() as session:
        count = await session.execute(select(func.count()).select_from(WebhookEventRow))
        assert count.scalar_one() == 0


@pytest.mark.asyncio
async def test_route_requires_configured_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "")
    payload = _event("invoice.paid", {"customer": "cus_1"})

    response = await _post(client, payload, _sign(payload))

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "WEBHOOK_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_subscription_created_activates_tenant(client, webhook_secret, seed_tenant, session_factory):
    await seed_tenant("tnt_new", billing_status="inactive", customer_id="cus_new")
    payload = _event("customer.subscription.created", _subscription())

    response = await _post(client, payload, _sign(payload))

    assert response.status_code == 200
    assert response.json() == {"received": True, "event_id": "evt_001", "duplicate": False}
    tenant = await _tenant(session_factory, "tnt_new")
    assert tenant.billing_status == "active"
    assert tenant.stripe_subscription_id == "sub_new"
    async with session_factory() as session:
        cycles = (await session.execute(select(BillingCycleRow))).scalars().all()
    assert len(cycles) == 1
    assert cycles[0].tenant_id == "tnt_new"
    assert cycles[0].usage_limit == 5


@pytest.mark.asyncio
async def test_subscription_matched_by_metadata_tenant_id(client, webhook_secret, seed_tenant, session_factory):
    await seed_tenant("tnt_meta", billing_status="inactive")
    sub = _subscription(status="trialing", usage_limit=None)
    sub["customer"] = "cus_meta"
    sub["metadata"]["tenant_id"] = "tnt_meta"
    payload = _event("customer.subscription.created", sub)

    response = await _post(client, payload, _sign(payload))

    assert response.status_code == 200
    tenant = await _tenant(session_factory, "tnt_meta")
    assert tenant.billing_status == "trialing"
    assert tenant.stripe_customer_id == "cus_meta"


@pytest.mark.asyncio
async def test_duplicate_event_applied_once(client, webhook_secret, seed_tenant, session_factory):
    await seed_tenant("tnt_new", billing_status="inactive", customer_id="cus_new")
    payload = _event("customer.subscription.created", _subscription())

    first = await _post(client, payload, _sign(payload))
    second = await _post(client, payload, _sign(payload))

    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    async with session_factory() as session:
        count = await session.execute(select(func.count()).select_from(BillingCycleRow))
        assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_payment_failure_blocks_admission(client, webhook_secret, seed_tenant, session_factory, queue):
    await seed_tenant(customer_id="cus_active", subscription_id="sub_active")
    payload = _event("invoice.payment_failed", {"customer": "cus_active"}, event_id="evt_fail")

    response = await _post(client, payload, _sign(payload))

    assert response.status_code == 200
    assert (await _tenant(session_factory, "tnt_active")).billing_status == "past_due"
    with pytest.raises(AdmissionDenied) as exc_info:
        await queue.submit("tnt_active", JobKind.GENERATE, {"prompt": "x"})
    assert exc_info.value.reason == AdmissionReason.BILLING_INACTIVE

    paid = _event("invoice.paid", {"customer": "cus_active"}, event_id="evt_paid")
    assert (await _post(client, paid, _sign(paid))).status_code == 200
    assert (await _tenant(session_factory, "tnt_active")).billing_status == "active"
    assert await queue.submit("tnt_active", JobKind.GENERATE, {"prompt": "x"})


@pytest.mark.asyncio
async def test_subscription_deleted_cancels_tenant(client, webhook_secret, seed_tenant, session_factory):
    await seed_tenant(customer_id="cus_active", subscription_id="sub_active")
    sub = {"id": "sub_active", "customer": "cus_active", "status": "canceled"}
    payload = _event("customer.subscription.deleted", sub)

    response = await _post(client, payload, _sign(payload))

    assert response.status_code == 200
    tenant = await _tenant(session_factory, "tnt_active")
    assert tenant.billing_status == "canceled"
    assert tenant.stripe_subscription_id is None

    # A later invoice event does not resurrect a canceled tenant
    paid = _event("invoice.paid", {"customer": "cus_active"}, event_id="evt_paid_late")
    await _post(client, paid, _sign(paid))
    assert (await _tenant(session_factory, "tnt_active")).billing_status == "canceled"


@pytest.mark.asyncio
async def test_unhandled_event_type_acknowledged(client, webhook_secret):
    payload = _event("charge.refunded", {"id": "ch_1"}, event_id="evt_other")
    response = await _post(client, payload, _sign(payload))
    assert response.status_code == 200
    assert response.json()["duplicate"] is False
