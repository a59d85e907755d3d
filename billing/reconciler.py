# billing/reconciler.py
"""
Subscription reconciliation.

Merges Stripe's view of a customer's subscription into:
- the interval history (a new interval per distinct subscription state)
- the snapshot (always overwritten with the latest fetch)

A pass fetches and derives everything first, then writes. A failed fetch
therefore leaves stored state untouched. Writes for one customer are
serialized within a process; fetches are not. Across processes the store's
compare-and-replace of the active interval keeps one open interval.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from billing.errors import ConflictError
from billing.locks import KeyedLock
from billing.models import SubscriptionInterval, SubscriptionSnapshot, utc_now
from billing.products import TierResolver
from billing.storage import BillingStore
from billing.stripe_client import BillingProvider, ProviderSubscription

_logger = logging.getLogger(__name__)

# Replace attempts when other writers keep moving the active interval
MAX_INTERVAL_ATTEMPTS = 3


@dataclass(frozen=True)
class DerivedState:
    """Fields derived from one Stripe subscription."""
    external_subscription_id: str
    status: Optional[str]
    external_price_id: Optional[str]
    tier_key: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    cancel_at_period_end: Optional[bool]
    started_at: Optional[datetime]
    payment_method_brand: Optional[str]
    payment_method_last4: Optional[str]

    def matches(self, interval: Optional[SubscriptionInterval]) -> bool:
        """True if the interval already records this subscription state."""
        if interval is None:
            return False
        return (
            interval.external_subscription_id == self.external_subscription_id
            and interval.status == self.status
            and interval.external_price_id == self.external_price_id
            and interval.period_start == self.period_start
            and interval.period_end == self.period_end
        )


def derive_state(subscription: ProviderSubscription, tiers: TierResolver) -> DerivedState:
    card = subscription.card
    price_id = subscription.price_id
    return DerivedState(
        external_subscription_id=subscription.id,
        status=subscription.status,
        external_price_id=price_id,
        tier_key=tiers.resolve(price_id),
        period_start=subscription.period_start,
        period_end=subscription.period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        started_at=subscription.started_at,
        payment_method_brand=card.brand if card else None,
        payment_method_last4=card.last4 if card else None,
    )


class SubscriptionReconciler:
    """
    Converges local subscription state to Stripe's.

    sync() is idempotent: repeating it with no change at Stripe writes no
    new intervals and re-upserts an identical snapshot.
    """

    def __init__(
        self,
        store: BillingStore,
        provider: BillingProvider,
        tiers: TierResolver,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._provider = provider
        self._tiers = tiers
        self._clock = clock or utc_now
        self._locks = KeyedLock()

    def sync(self, external_customer_id: str) -> SubscriptionSnapshot:
        """
        Run one reconciliation pass for a customer.

        Raises:
            ProviderError: If Stripe can't be reached or returns bad data
        """
        subscriptions = self._provider.list_subscriptions(external_customer_id, limit=1)
        derived = derive_state(subscriptions[0], self._tiers) if subscriptions else None

        with self._locks.hold(external_customer_id):
            now = self._clock()
            if derived is None:
                return self._apply_no_subscription(external_customer_id, now)
            return self._apply_subscription(external_customer_id, derived, now)

    def history(self, external_customer_id: str) -> list[SubscriptionInterval]:
        """Interval trail for a customer, oldest first."""
        return self._store.list_intervals(external_customer_id)

    def _apply_no_subscription(self, customer_id: str, now: datetime) -> SubscriptionSnapshot:
        closed = self._store.close_active_interval(customer_id, now)
        if closed:
            _logger.info(
                f"Closed active interval for {customer_id}: no subscription at Stripe",
                extra={"customer_id": customer_id},
            )

        snapshot = SubscriptionSnapshot.inactive(customer_id, updated_at=now)
        self._store.upsert_snapshot(snapshot)
        return snapshot

    def _apply_subscription(
        self, customer_id: str, derived: DerivedState, now: datetime
    ) -> SubscriptionSnapshot:
        self._record_interval(customer_id, derived, now)

        if derived.external_price_id and derived.tier_key is None:
            _logger.warning(
                f"Unknown price {derived.external_price_id} for {customer_id}; no tier",
                extra={"customer_id": customer_id},
            )

        snapshot = SubscriptionSnapshot(
            external_customer_id=customer_id,
            external_subscription_id=derived.external_subscription_id,
            status=derived.status,
            tier_key=derived.tier_key,
            external_price_id=derived.external_price_id,
            period_start=derived.period_start,
            period_end=derived.period_end,
            cancel_at_period_end=derived.cancel_at_period_end,
            payment_method_brand=derived.payment_method_brand,
            payment_method_last4=derived.payment_method_last4,
            updated_at=now,
        )
        self._store.upsert_snapshot(snapshot)
        return snapshot

    def _record_interval(self, customer_id: str, derived: DerivedState, now: datetime) -> None:
        """
        Open a new interval if the active one doesn't record this state.

        Another process can move the active interval between the read and
        the write. The store then rejects the write, and the active interval
        is re-read: if it already records this state there is nothing to do,
        otherwise the replace is retried against it.
        """
        for attempt in range(1, MAX_INTERVAL_ATTEMPTS + 1):
            active = self._store.get_active_interval(customer_id)
            if derived.matches(active):
                if attempt > 1:
                    _logger.info(
                        f"Interval for {customer_id} already recorded by another worker",
                        extra={"customer_id": customer_id},
                    )
                return

            interval = SubscriptionInterval.open(
                external_customer_id=customer_id,
                external_subscription_id=derived.external_subscription_id,
                external_price_id=derived.external_price_id,
                tier_key=derived.tier_key,
                status=derived.status,
                period_start=derived.period_start,
                period_end=derived.period_end,
                cancel_at_period_end=derived.cancel_at_period_end,
                started_at=derived.started_at,
                created_at=now,
            )
            try:
                self._store.replace_active_interval(interval, active.id if active else None)
            except ConflictError:
                if attempt == MAX_INTERVAL_ATTEMPTS:
                    raise
                continue

            _logger.info(
                f"New subscription interval for {customer_id}: "
                f"status={derived.status} price={derived.external_price_id}",
                extra={
                    "customer_id": customer_id,
                    "subscription_id": derived.external_subscription_id,
                    "previous_interval_id": active.id if active else None,
                },
            )
            return
