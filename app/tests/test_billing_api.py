# app/tests/test_billing_api.py
"""Tests for the billing HTTP API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from auth.models import AuthenticatedUser
from auth.tokens import TokenError
from billing.errors import ProviderError
from conftest import make_event, make_subscription, sign_payload

USER_TOKEN = "token-u1"
AUTH = {"Authorization": f"Bearer {USER_TOKEN}"}


class StubVerifier:
    """Accepts one known token."""

    def verify(self, token):
        if token != USER_TOKEN:
            raise TokenError("bad token")
        return AuthenticatedUser(id="u1", email="a@b.com")


@pytest.fixture
def client(billing_service):
    from app.config import load_config
    from app.main import create_app

    app = create_app(
        config=load_config(),
        billing_service=billing_service,
        token_verifier=StubVerifier(),
    )
    return TestClient(app)


def _post_webhook(client, body, secret, header="Stripe-Signature"):
    return client.post(
        "/billing/webhooks/stripe",
        content=body,
        headers={header: sign_payload(body, secret), "Content-Type": "application/json"},
    )


class TestHealth:
    """Tests for /health."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "billing-sync"
        assert data["configured_prices"] == 2
        assert data["tiers"] == ["premium", "pro"]
        assert "sk_test" not in response.text


class TestAuthRequired:
    """Interactive routes require a bearer token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("post", "/billing/checkout-session"),
            ("post", "/billing/portal-session"),
            ("get", "/billing/sync"),
            ("get", "/billing/subscription"),
            ("get", "/billing/entitlement"),
            ("get", "/billing/history"),
        ],
    )
    def test_missing_token(self, client, method, path):
        response = getattr(client, method)(path)

        assert response.status_code == 401
        assert response.json() == {"message": "Authorization token required"}

    def test_invalid_token(self, client):
        response = client.get("/billing/entitlement", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json() == {"message": "Invalid token"}


class TestCheckoutEndpoint:
    """Tests for POST /billing/checkout-session."""

    def test_creates_session(self, client, fake_provider):
        response = client.post("/billing/checkout-session", json={"priceId": "price_pro"}, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["url"].startswith("https://checkout.stripe.com/")
        assert fake_provider.calls_to("create_customer") == [("create_customer", "u1", "a@b.com")]

    def test_missing_price(self, client):
        response = client.post("/billing/checkout-session", json={}, headers=AUTH)

        assert response.status_code == 400
        assert response.json() == {"message": "price_id is required"}

    def test_invalid_json(self, client):
        response = client.post(
            "/billing/checkout-session",
            content=b"{oops",
            headers={**AUTH, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"message": "Body must be valid JSON"}

    def test_unknown_price(self, client):
        response = client.post("/billing/checkout-session", json={"price_id": "price_x"}, headers=AUTH)

        assert response.status_code == 400

    def test_provider_failure_is_generic(self, client, fake_provider):
        fake_provider.fail_with = ProviderError("Stripe customer create failed (500)", http_status=500)

        response = client.post("/billing/checkout-session", json={"price_id": "price_pro"}, headers=AUTH)

        assert response.status_code == 502
        assert response.json() == {"message": "Could not reach payment provider"}


class TestPortalEndpoint:
    """Tests for POST /billing/portal-session."""

    def test_creates_session(self, client, billing_service):
        billing_service.customers.get_or_create("u1", "a@b.com")

        response = client.post(
            "/billing/portal-session",
            json={"returnUrl": "https://app.example.com/account"},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json()["url"].startswith("https://billing.stripe.com/")

    def test_without_customer(self, client):
        response = client.post(
            "/billing/portal-session",
            json={"return_url": "https://app.example.com/account"},
            headers=AUTH,
        )

        assert response.status_code == 502
        assert response.json() == {"message": "Could not reach payment provider"}

    def test_relative_return_url(self, client):
        response = client.post("/billing/portal-session", json={"return_url": "/account"}, headers=AUTH)

        assert response.status_code == 400


class TestWebhookEndpoint:
    """Tests for POST /billing/webhooks/stripe."""

    def test_missing_signature(self, client):
        response = client.post("/billing/webhooks/stripe", content=make_event())

        assert response.status_code == 400
        assert response.json() == {"message": "Missing signature"}

    def test_invalid_signature(self, client, memory_store):
        response = _post_webhook(client, make_event(), "whsec_wrong")

        assert response.status_code == 400
        assert response.json() == {"message": "Invalid signature"}
        assert memory_store.ledger_size() == 0

    def test_valid_event(self, client, billing_service, fake_provider, memory_store, webhook_secret):
        customer_id = billing_service.customers.get_or_create("u1").external_customer_id
        fake_provider.subscriptions[customer_id] = [make_subscription()]

        response = _post_webhook(client, make_event(customer=customer_id), webhook_secret)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert memory_store.get_snapshot(customer_id).tier_key == "pro"

    def test_plain_signature_header(self, client, memory_store, webhook_secret):
        response = _post_webhook(client, make_event(customer="cus_x"), webhook_secret, header="Signature")

        assert response.status_code == 200
        assert memory_store.ledger_size() == 1

    def test_replay_is_ok(self, client, memory_store, webhook_secret):
        body = make_event(customer="cus_x")

        first = _post_webhook(client, body, webhook_secret)
        second = _post_webhook(client, body, webhook_secret)

        assert first.status_code == second.status_code == 200
        assert memory_store.ledger_size() == 1

    def test_malformed_body(self, client, webhook_secret):
        response = _post_webhook(client, b"not json", webhook_secret)

        assert response.status_code == 400

    def test_reconcile_failure_is_502(self, client, billing_service, fake_provider, webhook_secret):
        customer_id = billing_service.customers.get_or_create("u1").external_customer_id
        fake_provider.fail_with = ProviderError("Stripe unavailable", http_status=503)

        response = _post_webhook(client, make_event(customer=customer_id), webhook_secret)

        assert response.status_code == 502

    def test_no_bearer_needed(self, client, webhook_secret):
        response = _post_webhook(client, make_event(customer=None), webhook_secret)

        assert response.status_code == 200


class TestSubscriptionEndpoints:
    """Tests for sync, subscription and entitlement reads."""

    def test_before_any_billing(self, client):
        assert client.get("/billing/subscription", headers=AUTH).json() == {"subscription": None}
        assert client.get("/billing/entitlement", headers=AUTH).json() == {"active": False, "tier_key": None}

    def test_sync_then_read(self, client, fake_provider):
        fake_provider.customers["cus_77"] = "u1"
        fake_provider.subscriptions["cus_77"] = [make_subscription(price_id="price_premium")]

        synced = client.get("/billing/sync", headers=AUTH)

        assert synced.status_code == 200
        subscription = synced.json()["subscription"]
        assert subscription["external_customer_id"] == "cus_77"
        assert subscription["status"] == "active"
        assert subscription["tier_key"] == "premium"
        assert client.get("/billing/subscription", headers=AUTH).json()["subscription"]["status"] == "active"
        assert client.get("/billing/entitlement", headers=AUTH).json() == {"active": True, "tier_key": "premium"}

    def test_sync_provider_failure(self, client, fake_provider):
        fake_provider.fail_with = ProviderError("timeout")

        response = client.get("/billing/sync", headers=AUTH)

        assert response.status_code == 502
        assert response.json() == {"message": "Could not reach payment provider"}

    def test_entitlement_survives_provider_outage(self, client, fake_provider):
        fake_provider.customers["cus_77"] = "u1"
        fake_provider.subscriptions["cus_77"] = [make_subscription()]
        client.get("/billing/sync", headers=AUTH)
        fake_provider.fail_with = ProviderError("down")

        response = client.get("/billing/entitlement", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"active": True, "tier_key": "pro"}

    def test_history_before_any_billing(self, client):
        assert client.get("/billing/history", headers=AUTH).json() == {"customer": None, "intervals": []}

    def test_history_lists_intervals(self, client, fake_provider):
        fake_provider.customers["cus_77"] = "u1"
        fake_provider.subscriptions["cus_77"] = [make_subscription(status="trialing")]
        client.get("/billing/sync", headers=AUTH)
        fake_provider.subscriptions["cus_77"] = [make_subscription(status="active")]
        client.get("/billing/sync", headers=AUTH)
        fake_provider.fail_with = ProviderError("down")

        response = client.get("/billing/history", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["customer"]["internal_user_id"] == "u1"
        assert data["customer"]["external_customer_id"] == "cus_77"
        assert [i["status"] for i in data["intervals"]] == ["trialing", "active"]
        assert data["intervals"][0]["ended_at"] is not None
        assert data["intervals"][1]["ended_at"] is None


class TestRequestSizeLimit:
    """Oversized bodies are rejected before routing."""

    def test_too_large(self, client, webhook_secret):
        body = b"x" * (2 * 1024 * 1024)

        response = client.post("/billing/webhooks/stripe", content=body, headers={"Stripe-Signature": "t=1,v1=a"})

        assert response.status_code == 413
        assert response.json() == {"message": "Request entity too large"}
