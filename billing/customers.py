# billing/customers.py
"""
Internal user <-> Stripe customer links.

Links are created lazily on the first billing interaction and never
change afterwards.
"""

from __future__ import annotations

import logging
from typing import Optional

from billing.errors import ConflictError
from billing.locks import KeyedLock
from billing.models import CustomerLink, utc_now
from billing.storage import BillingStore
from billing.stripe_client import BillingProvider

_logger = logging.getLogger(__name__)


class CustomerLinker:
    """
    Get-or-create for customer links.

    First-time creation is serialized per user so two concurrent requests
    (e.g. two browser tabs) can't both create a Stripe customer. Across
    processes, the store's unique constraint decides the winner and the
    Stripe metadata search lets a retry reuse a customer whose link was
    never persisted.
    """

    def __init__(self, store: BillingStore, provider: BillingProvider):
        self._store = store
        self._provider = provider
        self._locks = KeyedLock()

    def get(self, user_id: str) -> Optional[CustomerLink]:
        return self._store.get_link_by_user(user_id)

    def get_by_customer(self, external_customer_id: str) -> Optional[CustomerLink]:
        return self._store.get_link_by_customer(external_customer_id)

    def get_or_create(self, user_id: str, email: Optional[str] = None) -> CustomerLink:
        """
        Return the user's link, creating the Stripe customer if needed.

        Raises:
            ProviderError: If Stripe customer lookup or creation fails
        """
        existing = self._store.get_link_by_user(user_id)
        if existing:
            return existing

        with self._locks.hold(user_id):
            # Another request may have finished while we waited
            existing = self._store.get_link_by_user(user_id)
            if existing:
                return existing

            customer_id = self._provider.find_customer_by_user(user_id)
            if customer_id:
                _logger.info(
                    f"Reusing Stripe customer for user {user_id}",
                    extra={"customer_id": customer_id},
                )
            else:
                customer_id = self._provider.create_customer(user_id, email)
                _logger.info(
                    f"Created Stripe customer for user {user_id}",
                    extra={"customer_id": customer_id},
                )

            link = CustomerLink(
                internal_user_id=user_id,
                external_customer_id=customer_id,
                created_at=utc_now(),
            )
            try:
                self._store.create_link(link)
            except ConflictError:
                winner = self._store.get_link_by_user(user_id)
                if winner is None:
                    raise
                if winner.external_customer_id != customer_id:
                    _logger.warning(
                        f"Orphaned Stripe customer {customer_id} for user {user_id}",
                        extra={"kept_customer_id": winner.external_customer_id},
                    )
                return winner

            return link
