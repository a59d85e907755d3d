"""Configure pytest for the billing sync project."""
import hashlib
import hmac
import json
import os
import sys
import threading
import time
from pathlib import Path

import pytest

# =============================================================================
# Test Environment Configuration
# =============================================================================
# Set environment for tests BEFORE any imports
# app.main builds the app at import time and validates config
_TEST_ENV = {
    "ENVIRONMENT": "test",
    "STRIPE_SECRET_KEY": "sk_test_dummy",
    "STRIPE_WEBHOOK_SECRET": "whsec_test_secret",
    "STRIPE_SUCCESS_URL": "https://app.example.com/billing/success",
    "STRIPE_CANCEL_URL": "https://app.example.com/billing/cancel",
    "STRIPE_PRICE_PRO": "price_pro",
    "STRIPE_PRICE_PREMIUM": "price_premium",
    "AUTH_JWKS_URL": "https://auth.example.com/.well-known/jwks.json",
    "AUTH_ISSUER": "https://auth.example.com",
    "BILLING_STORAGE": "memory",
}

for _name, _value in _TEST_ENV.items():
    os.environ.setdefault(_name, _value)

# Add project root to path so tests can import top-level packages
root_path = Path(__file__).parent
if str(root_path) not in sys.path:
    sys.path.insert(0, str(root_path))


# =============================================================================
# Shared billing fixtures
# =============================================================================


def make_subscription(
    sub_id="sub_1",
    status="active",
    price_id="price_pro",
    period_start=1_700_000_000,
    period_end=1_702_592_000,
    start_date=1_699_000_000,
    cancel_at_period_end=False,
    card=None,
):
    """Raw Stripe subscription dict in the shape list_subscriptions returns."""
    payload = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "start_date": start_date,
        "items": {"data": [{"price": {"id": price_id}}]},
    }
    if card:
        payload["default_payment_method"] = {"card": card}
    return payload


class FakeProvider:
    """
    In-process stand-in for StripeGateway.

    Subscriptions are raw dicts keyed by customer; every call is recorded.
    """

    def __init__(self):
        self.subscriptions = {}
        self.customers = {}
        self.calls = []
        self.fail_with = None
        self._lock = threading.Lock()
        self._next_id = 0

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name,) + args)
        if self.fail_with is not None:
            raise self.fail_with

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    def find_customer_by_user(self, user_id):
        self._record("find_customer_by_user", user_id)
        for customer_id, owner in self.customers.items():
            if owner == user_id:
                return customer_id
        return None

    def create_customer(self, user_id, email=None):
        self._record("create_customer", user_id, email)
        with self._lock:
            self._next_id += 1
            customer_id = f"cus_{self._next_id}"
            self.customers[customer_id] = user_id
        return customer_id

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, metadata=None):
        self._record("create_checkout_session", customer_id, price_id)
        return f"https://checkout.stripe.com/c/{customer_id}/{price_id}"

    def create_portal_session(self, customer_id, return_url):
        self._record("create_portal_session", customer_id, return_url)
        return f"https://billing.stripe.com/p/{customer_id}"

    def list_subscriptions(self, customer_id, limit=1):
        from billing.stripe_client import parse_subscription

        self._record("list_subscriptions", customer_id)
        raw = self.subscriptions.get(customer_id, [])
        return [parse_subscription(s) for s in raw[:limit]]


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def memory_store():
    from billing.storage import InMemoryBillingStore
    return InMemoryBillingStore()


@pytest.fixture
def webhook_secret():
    return "whsec_unit_test"


@pytest.fixture
def billing_service(memory_store, fake_provider, webhook_secret):
    from billing.products import TierResolver
    from billing.service import BillingService, CheckoutUrls

    return BillingService(
        store=memory_store,
        provider=fake_provider,
        tiers=TierResolver({"price_pro": "pro", "price_premium": "premium"}),
        webhook_secret=webhook_secret,
        checkout_urls=CheckoutUrls(
            success_url="https://app.example.com/ok",
            cancel_url="https://app.example.com/cancel",
        ),
    )


def make_event(event_id="evt_1", event_type="customer.subscription.updated", customer="cus_1", obj=None):
    """Serialized webhook body for an event about one customer."""
    data_object = obj if obj is not None else {"id": "sub_1", "object": "subscription", "customer": customer}
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": data_object}}).encode()


def sign_payload(body, secret, timestamp=None):
    """Stripe-Signature header for a body, as the provider would send it."""
    if timestamp is None:
        timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"
