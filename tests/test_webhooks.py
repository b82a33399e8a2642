"""
Tests for POST /payments/webhooks/{provider}.

These tests verify:
  - A card webhook re-confirms with the provider before crediting a top-up
  - Match payment events refresh the payment hold
  - Duplicate deliveries credit once
  - Signatures are enforced when a signing secret is configured
  - Unknown payments and unsupported events are acknowledged but not handled
"""

import json
import time

import pytest

from fiesta_escrow.config import settings
from fiesta_escrow.exceptions import ValidationError
from fiesta_escrow.security import compute_webhook_signature, verify_webhook_signature
from fiesta_escrow.services.webhook_service import extract_payment_id

SECRET = "whsec_test"


def _card_event(external_id: str, event_type: str = "payment_intent.succeeded") -> dict:
    return {"type": event_type, "data": {"object": {"id": external_id, "status": "succeeded"}}}


def _signed(body: bytes, secret: str = SECRET, timestamp: int | None = None) -> dict:
    timestamp = str(timestamp or int(time.time()))
    signature = compute_webhook_signature(body, timestamp, secret)
    return {"Provider-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "CARD_PROVIDER_WEBHOOK_SECRET", SECRET)
    return SECRET


@pytest.fixture
def no_webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "CARD_PROVIDER_WEBHOOK_SECRET", None)


class TestTopUpWebhooks:
    async def test_succeeded_event_credits_once(self, client, make_user, provider, no_webhook_secret):
        user = await make_user()
        created = await client.post("/wallet/topup", json={"amount_cents": 2000}, headers=user.headers)
        external_id = created.json()["external_id"]
        provider.set_status(external_id, "succeeded")

        for _ in range(2):
            response = await client.post("/payments/webhooks/card", json=_card_event(external_id))
            assert response.status_code == 200
            assert response.json() == {
                "received": True,
                "handled": True,
                "external_id": external_id,
                "status": "completed",
            }

        wallet = await client.get("/wallet", headers=user.headers)
        assert wallet.json()["balance_cents"] == 2000

    async def test_payload_status_is_not_trusted(self, client, make_user, provider, no_webhook_secret):
        """The event claims success but the provider still waits for the payer."""
        user = await make_user()
        created = await client.post("/wallet/topup", json={"amount_cents": 2000}, headers=user.headers)
        external_id = created.json()["external_id"]

        response = await client.post("/payments/webhooks/card", json=_card_event(external_id))
        assert response.json()["status"] == "pending"
        assert provider.calls["retrieve"] == 1

        wallet = await client.get("/wallet", headers=user.headers)
        assert wallet.json()["balance_cents"] == 0


class TestMatchWebhooks:
    async def test_capturable_event_authorizes_hold(self, client, make_user, make_experience, provider, no_webhook_secret):
        host = await make_user()
        requester = await make_user()
        experience = await make_experience(host.id)
        created = await client.post(
            "/matches", json={"experience_id": str(experience.id)}, headers=requester.headers
        )
        match_id = created.json()["match"]["id"]
        external_id = created.json()["payment"]["external_id"]
        provider.set_status(external_id, "requires_capture")

        response = await client.post(
            "/payments/webhooks/card",
            json=_card_event(external_id, "payment_intent.amount_capturable_updated"),
        )
        assert response.json()["handled"] is True
        assert response.json()["status"] == "authorized"

        # The host can accept without the requester calling confirm
        accept = await client.post(f"/matches/{match_id}/accept", headers=host.headers)
        assert accept.json()["status"] == "accepted"
        assert provider.calls["retrieve"] == 1

    async def test_cancel_event_releases_accepted_hold(self, client, make_user, make_experience, provider, no_webhook_secret):
        host = await make_user()
        requester = await make_user()
        experience = await make_experience(host.id)
        created = await client.post(
            "/matches", json={"experience_id": str(experience.id)}, headers=requester.headers
        )
        match_id = created.json()["match"]["id"]
        external_id = created.json()["payment"]["external_id"]
        provider.set_status(external_id, "requires_capture")
        await client.post(f"/matches/{match_id}/accept", headers=host.headers)

        provider.set_status(external_id, "canceled")
        response = await client.post(
            "/payments/webhooks/card",
            json=_card_event(external_id, "payment_intent.canceled"),
        )
        assert response.json()["status"] == "failed"

        complete = await client.post(f"/matches/{match_id}/complete", headers=host.headers)
        assert complete.status_code == 409
        assert provider.calls["capture"] == 0

        cancel = await client.post(f"/matches/{match_id}/cancel", headers=requester.headers)
        assert cancel.json()["status"] == "cancelled"
        assert provider.calls["void"] == 0


class TestWebhookSignatures:
    async def test_valid_signature_accepted(self, client, make_user, provider, webhook_secret):
        user = await make_user()
        created = await client.post("/wallet/topup", json={"amount_cents": 1000}, headers=user.headers)
        external_id = created.json()["external_id"]
        provider.set_status(external_id, "succeeded")
        body = json.dumps(_card_event(external_id)).encode()

        response = await client.post("/payments/webhooks/card", content=body, headers=_signed(body))
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    async def test_bad_signature_rejected(self, client, make_user, provider, webhook_secret):
        user = await make_user()
        created = await client.post("/wallet/topup", json={"amount_cents": 1000}, headers=user.headers)
        external_id = created.json()["external_id"]
        provider.set_status(external_id, "succeeded")
        body = json.dumps(_card_event(external_id)).encode()

        response = await client.post(
            "/payments/webhooks/card", content=body, headers=_signed(body, secret="whsec_other")
        )
        assert response.status_code == 401

        wallet = await client.get("/wallet", headers=user.headers)
        assert wallet.json()["balance_cents"] == 0

    async def test_missing_signature_rejected(self, client, webhook_secret):
        response = await client.post("/payments/webhooks/card", json=_card_event("pi_1"))
        assert response.status_code == 401

    def test_stale_timestamp_rejected(self):
        body = b'{"type": "payment_intent.succeeded"}'
        old = int(time.time()) - 3600
        header = _signed(body, timestamp=old)["Provider-Signature"]
        assert verify_webhook_signature(body, header, SECRET, tolerance_seconds=300) is False
        assert verify_webhook_signature(body, header, SECRET, tolerance_seconds=300, now=old + 10) is True

    def test_any_v1_signature_may_match(self):
        body = b"{}"
        timestamp = "1700000000"
        good = compute_webhook_signature(body, timestamp, SECRET)
        header = f"t={timestamp},v1=deadbeef,v1={good}"
        assert verify_webhook_signature(body, header, SECRET, 300, now=1700000000) is True

    @pytest.mark.parametrize("header", ["", "v1=abc", "t=notanumber,v1=abc", "t=1700000000"])
    def test_malformed_headers_rejected(self, header):
        assert verify_webhook_signature(b"{}", header, SECRET, 300, now=1700000000) is False


class TestWebhookRouting:
    async def test_unknown_payment_acknowledged(self, client, no_webhook_secret):
        response = await client.post("/payments/webhooks/card", json=_card_event("pi_unknown"))
        assert response.status_code == 200
        assert response.json()["handled"] is False
        assert response.json()["external_id"] == "pi_unknown"

    async def test_unsupported_event_ignored(self, client, provider, no_webhook_secret):
        response = await client.post(
            "/payments/webhooks/card", json=_card_event("pi_1", "customer.created")
        )
        assert response.json()["handled"] is False
        assert provider.calls["retrieve"] == 0

    async def test_payment_from_other_provider_ignored(self, client, make_user, provider):
        user = await make_user()
        created = await client.post("/wallet/topup", json={"amount_cents": 1000}, headers=user.headers)
        external_id = created.json()["external_id"]

        response = await client.post(
            "/payments/webhooks/order",
            json={"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": external_id}},
        )
        assert response.json()["handled"] is False

    async def test_malformed_body(self, client, no_webhook_secret):
        response = await client.post(
            "/payments/webhooks/card", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    async def test_unknown_provider_path(self, client):
        response = await client.post("/payments/webhooks/crypto", json={})
        assert response.status_code == 422

    @pytest.mark.parametrize(
        "payload, expected",
        [
            ({"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "ORDER-1"}}, "ORDER-1"),
            (
                {
                    "event_type": "PAYMENT.AUTHORIZATION.CREATED",
                    "resource": {"id": "AUTH-1", "supplementary_data": {"related_ids": {"order_id": "ORDER-2"}}},
                },
                "ORDER-2",
            ),
            ({"event_type": "BILLING.PLAN.CREATED", "resource": {"id": "P-1"}}, None),
        ],
    )
    def test_order_payment_id_extraction(self, payload, expected):
        assert extract_payment_id("order", payload)[1] == expected

    def test_unknown_provider_extraction(self):
        with pytest.raises(ValidationError):
            extract_payment_id("crypto", {})
