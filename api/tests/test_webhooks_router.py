"""Tests for api/api/routers/webhooks.py and api/api/routers/billing.py."""

from __future__ import annotations

import json
from typing import Any

import pytest
from pydantic import SecretStr

from api.config import APISettings, PlatformEnv
from api.dependencies import get_settings
from api.security import sign_webhook_body

WEBHOOK_SECRET = "whsec-test"
URL = "/api/v1/webhooks/payments"


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def _deliver(client, payload: dict[str, Any], *, secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload).encode("utf-8")
    return await client.post(
        URL,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_webhook_body(body, secret),
        },
    )


def _approved(email: str = "ana@example.com", payment_id: str = "pay_1", **extra: Any) -> dict[str, Any]:
    return {
        "event": "payment.approved",
        "payment_id": payment_id,
        "customer_email": email,
        "amount": "49.90",
        "status": "paid",
        **extra,
    }


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


class TestSignature:
    @pytest.mark.asyncio
    async def test_missing_signature_403(self, client, register):
        await register()
        resp = await client.post(URL, json=_approved())
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_wrong_secret_403(self, client, register):
        created = await register()
        resp = await _deliver(client, _approved(), secret="not-the-secret")
        assert resp.status_code == 403

        sub = await client.get("/api/v1/billing/subscription", headers=_auth(created["access_token"]))
        assert sub.json()["status"] == "TRIAL"

    @pytest.mark.asyncio
    async def test_unsigned_accepted_in_dev_without_secret(self, app, client, register):
        app.dependency_overrides[get_settings] = lambda: APISettings(
            database_url="sqlite+aiosqlite:///:memory:",
            platform_env=PlatformEnv.DEV,
            payment_webhook_secret=SecretStr(""),
            _env_file=None,
        )
        await register()
        resp = await client.post(URL, json=_approved())
        assert resp.status_code == 200
        assert resp.json()["status"] == "applied"

    @pytest.mark.asyncio
    async def test_unsigned_refused_outside_dev_without_secret(self, app, client, register):
        app.dependency_overrides[get_settings] = lambda: APISettings(
            database_url="sqlite+aiosqlite:///:memory:",
            platform_env=PlatformEnv.STAGING,
            token_secret=SecretStr("staging-token-secret"),
            payment_webhook_secret=SecretStr(""),
            _env_file=None,
        )
        await register()
        resp = await client.post(URL, json=_approved())
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Event handling
# ---------------------------------------------------------------------------


class TestPaymentEvents:
    @pytest.mark.asyncio
    async def test_approval_activates_and_records_invoice(self, client, register):
        created = await register()

        resp = await _deliver(client, _approved(metadata={"payment_method": "CARD"}))
        assert resp.status_code == 200
        assert resp.json()["status"] == "applied"
        assert resp.json()["subscription_status"] == "ACTIVE"

        sub = await client.get("/api/v1/billing/subscription", headers=_auth(created["access_token"]))
        body = sub.json()
        assert body["status"] == "ACTIVE"
        assert body["trial_ends_at"] is None
        assert body["next_billing_at"] is not None
        assert len(body["invoices"]) == 1
        invoice = body["invoices"][0]
        assert invoice["external_payment_id"] == "pay_1"
        assert invoice["payment_method"] == "CARD"
        assert invoice["receipt_url"] == "https://pay.cakto.com.br/invoice/pay_1"

    @pytest.mark.asyncio
    async def test_replayed_approval_is_noop(self, client, register):
        created = await register()

        first = await _deliver(client, _approved())
        replay = await _deliver(client, _approved())

        assert first.json()["status"] == "applied"
        assert replay.status_code == 200
        assert replay.json()["status"] == "noop"
        assert replay.json()["reason"] == "duplicate_payment"

        sub = await client.get("/api/v1/billing/subscription", headers=_auth(created["access_token"]))
        assert len(sub.json()["invoices"]) == 1

    @pytest.mark.asyncio
    async def test_unknown_customer_404(self, client):
        resp = await _deliver(client, _approved(email="ghost@example.com"))
        assert resp.status_code == 404
        assert resp.json() == {"status": "rejected", "reason": "unknown_subject"}

    @pytest.mark.asyncio
    async def test_approval_without_payment_id_400(self, client, register):
        await register()
        payload = _approved()
        payload.pop("payment_id")
        resp = await _deliver(client, payload)
        assert resp.status_code == 400
        assert resp.json()["reason"] == "missing_payment_id"

    @pytest.mark.asyncio
    async def test_cancellation_after_activation(self, client, register):
        created = await register()
        await _deliver(client, _approved())

        resp = await _deliver(
            client,
            {"event": "payment.canceled", "customer_email": "ana@example.com", "reason": "chargeback"},
        )
        assert resp.json()["status"] == "applied"
        assert resp.json()["subscription_status"] == "CANCELED"

        sub = await client.get("/api/v1/billing/subscription", headers=_auth(created["access_token"]))
        assert sub.json()["status"] == "CANCELED"

    @pytest.mark.asyncio
    async def test_event_falls_back_to_status_field(self, client, register):
        await register()
        resp = await _deliver(client, {"status": "approved", "payment_id": 42, "customer_email": "ana@example.com"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "applied"

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_noop(self, client, register):
        await register()
        resp = await _deliver(client, {"event": "refund_requested", "customer_email": "ana@example.com"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "noop"
        assert resp.json()["reason"] == "unknown_event"

    @pytest.mark.asyncio
    async def test_invalid_json_400(self, client):
        body = b"{not json"
        resp = await client.post(
            URL,
            content=body,
            headers={"X-Webhook-Signature": sign_webhook_body(body, WEBHOOK_SECRET)},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_customer_email_400(self, client):
        resp = await _deliver(client, {"event": "payment.approved", "payment_id": "pay_1"})
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Billing view
# ---------------------------------------------------------------------------


class TestSubscriptionView:
    @pytest.mark.asyncio
    async def test_requires_token(self, client):
        resp = await client.get("/api/v1/billing/subscription")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_new_account_is_in_trial(self, client, register):
        created = await register()
        resp = await client.get("/api/v1/billing/subscription", headers=_auth(created["access_token"]))
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "TRIAL"
        assert body["trial_ends_at"] is not None
        assert body["invoices"] == []
