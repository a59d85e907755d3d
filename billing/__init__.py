# billing/__init__.py
"""
Billing module for Stripe subscriptions.

Provides:
- Webhook signature verification and idempotent event processing
- Customer links between users and Stripe customers
- Subscription reconciliation into interval history and a snapshot cache
- Entitlement checks from the local snapshot
"""

from billing.errors import (
    BillingError,
    ValidationError,
    AuthenticationError,
    ProviderError,
    ConflictError,
    NotFoundError,
    CustomerNotFoundError,
)
from billing.models import (
    CustomerLink,
    SubscriptionInterval,
    SubscriptionSnapshot,
    LedgerEntry,
    Entitlement,
)
from billing.products import TierResolver
from billing.service import BillingService, CheckoutUrls
from billing.signature import verify_signature
from billing.storage import BillingStore, InMemoryBillingStore
from billing.stripe_client import BillingProvider, StripeGateway

__all__ = [
    "BillingError",
    "ValidationError",
    "AuthenticationError",
    "ProviderError",
    "ConflictError",
    "NotFoundError",
    "CustomerNotFoundError",
    "CustomerLink",
    "SubscriptionInterval",
    "SubscriptionSnapshot",
    "LedgerEntry",
    "Entitlement",
    "TierResolver",
    "BillingService",
    "CheckoutUrls",
    "verify_signature",
    "BillingStore",
    "InMemoryBillingStore",
    "BillingProvider",
    "StripeGateway",
]
