# billing/service.py
"""
Billing service for Stripe subscription management.

Handles:
- Checkout and customer portal session creation
- Verified, idempotent webhook processing
- Interactive subscription sync
- Entitlement checks (local reads only, never Stripe)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from billing.customers import CustomerLinker
from billing.errors import (
    AuthenticationError,
    ConflictError,
    CustomerNotFoundError,
    ProviderError,
    ValidationError,
)
from billing.ledger import EventLedger
from billing.models import (
    CustomerLink,
    Entitlement,
    LedgerEntry,
    SubscriptionInterval,
    SubscriptionSnapshot,
)
from billing.products import TierResolver
from billing.reconciler import SubscriptionReconciler
from billing.signature import verify_signature
from billing.storage import BillingStore
from billing.stripe_client import BillingProvider
from billing.webhooks import WebhookResult, parse_event

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutUrls:
    """Where Stripe Checkout sends the user afterwards."""
    success_url: str
    cancel_url: str


class BillingService:
    """
    Public billing operations.

    Composes the customer linker, event ledger and reconciler over one
    store and one provider. All collaborators are injected.
    """

    def __init__(
        self,
        store: BillingStore,
        provider: BillingProvider,
        tiers: TierResolver,
        webhook_secret: str,
        checkout_urls: CheckoutUrls,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._provider = provider
        self._tiers = tiers
        self._webhook_secret = webhook_secret
        self._checkout_urls = checkout_urls
        self.customers = CustomerLinker(store, provider)
        self.ledger = EventLedger(store)
        self.reconciler = SubscriptionReconciler(store, provider, tiers, clock=clock)

    @property
    def tiers(self) -> TierResolver:
        return self._tiers

    # -------------------------------------------------------------------------
    # Checkout / portal
    # -------------------------------------------------------------------------

    def create_checkout_session(self, user_id: str, email: Optional[str], price_id: str) -> str:
        """
        Create a Stripe Checkout session for a subscription.

        Args:
            user_id: Internal user ID
            email: User's email, used if a Stripe customer must be created
            price_id: Stripe price to subscribe to

        Returns:
            Checkout URL

        Raises:
            ValidationError: If price_id is empty or not a configured price
            ProviderError: If Stripe fails or returns no URL
        """
        price_id = (price_id or "").strip()
        if not price_id:
            raise ValidationError("price_id must be a non-empty string")
        if not self._tiers.is_known(price_id):
            raise ValidationError(f"Unknown price_id: {price_id}")

        link = self.customers.get_or_create(user_id, email)
        url = self._provider.create_checkout_session(
            customer_id=link.external_customer_id,
            price_id=price_id,
            success_url=self._checkout_urls.success_url,
            cancel_url=self._checkout_urls.cancel_url,
            metadata={"user_id": user_id},
        )
        if not url:
            raise ProviderError("Stripe checkout session did not return a URL")

        _logger.info(
            f"Created checkout session for user {user_id}",
            extra={"customer_id": link.external_customer_id, "price_id": price_id},
        )
        return url

    def create_portal_session(self, user_id: str, return_url: str) -> str:
        """
        Create a Stripe Customer Portal session.

        Raises:
            CustomerNotFoundError: If the user has never checked out
            ProviderError: If Stripe fails or returns no URL
        """
        link = self.customers.get(user_id)
        if link is None:
            raise CustomerNotFoundError()

        url = self._provider.create_portal_session(link.external_customer_id, return_url)
        if not url:
            raise ProviderError("Stripe portal session did not return a URL")
        return url

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def handle_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Verify and process one webhook delivery.

        Already-processed events are a successful no-op so Stripe stops
        retrying them.

        Raises:
            AuthenticationError: If the signature is missing, invalid or stale
            ValidationError: If the verified body isn't a valid event
            ProviderError: If reconciliation can't reach Stripe
        """
        if not signature_header:
            raise AuthenticationError("Missing Stripe-Signature header")
        if not verify_signature(raw_body, signature_header, self._webhook_secret):
            raise AuthenticationError("Invalid Stripe signature")

        event, payload = parse_event(raw_body)
        customer_id = event.customer_id

        if self.ledger.has_processed(event.id):
            _logger.info(f"Skipping duplicate event {event.id}", extra={"event_id": event.id})
            return WebhookResult(event.id, event.type, duplicate=True, customer_id=customer_id)

        entry = LedgerEntry.new(
            provider_event_id=event.id,
            event_type=event.type,
            external_customer_id=customer_id,
            raw_payload=payload,
        )
        try:
            self.ledger.record(entry)
        except ConflictError:
            # Lost a race with a concurrent delivery of the same event
            return WebhookResult(event.id, event.type, duplicate=True, customer_id=customer_id)

        if not customer_id:
            return WebhookResult(event.id, event.type)

        if self.customers.get_by_customer(customer_id) is None:
            _logger.warning(
                f"Event {event.type} for unlinked customer {customer_id}; not reconciling",
                extra={"event_id": event.id, "customer_id": customer_id},
            )
            return WebhookResult(event.id, event.type, customer_id=customer_id)

        self.reconciler.sync(customer_id)
        return WebhookResult(event.id, event.type, reconciled=True, customer_id=customer_id)

    # -------------------------------------------------------------------------
    # Sync and reads
    # -------------------------------------------------------------------------

    def sync_for_user(self, user_id: str, email: Optional[str] = None) -> SubscriptionSnapshot:
        """
        Reconcile a user's subscription on demand (e.g. after checkout).

        Raises:
            ProviderError: If Stripe can't be reached
        """
        link = self.customers.get_or_create(user_id, email)
        return self.reconciler.sync(link.external_customer_id)

    def get_subscription(self, user_id: str) -> Optional[SubscriptionSnapshot]:
        """Cached subscription state for a user. Never calls Stripe."""
        link = self.customers.get(user_id)
        if link is None:
            return None
        return self._store.get_snapshot(link.external_customer_id)

    def get_entitlement(self, user_id: str) -> Entitlement:
        """Whether the user is entitled, and to which tier. Never calls Stripe."""
        return Entitlement.from_snapshot(self.get_subscription(user_id))

    def get_history(self, user_id: str) -> tuple[Optional[CustomerLink], list[SubscriptionInterval]]:
        """The user's customer link and interval trail, oldest first. Never calls Stripe."""
        link = self.customers.get(user_id)
        if link is None:
            return None, []
        return link, self.reconciler.history(link.external_customer_id)
