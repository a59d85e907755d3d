# billing/tests/test_reconciler.py
"""
Tests for subscription reconciliation.

Tests:
- Interval history and snapshot convergence
- Recovery when another worker moves the active interval
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from billing.errors import ConflictError
from billing.storage import InMemoryBillingStore
from conftest import FakeProvider, make_subscription


class _Clock:
    """Deterministic clock advancing one minute per call."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


@pytest.fixture
def reconciler(memory_store, fake_provider):
    from billing.products import TierResolver
    from billing.reconciler import SubscriptionReconciler

    return SubscriptionReconciler(
        memory_store,
        fake_provider,
        TierResolver({"price_pro": "pro", "price_premium": "premium"}),
        clock=_Clock(),
    )


# =============================================================================
# Reconciler
# =============================================================================


class TestReconciler:
    """Tests for SubscriptionReconciler.sync."""

    def test_first_sync_opens_interval(self, reconciler, fake_provider, memory_store):
        fake_provider.subscriptions["cus_1"] = [
            make_subscription(card={"brand": "visa", "last4": "4242"})
        ]

        snapshot = reconciler.sync("cus_1")

        assert snapshot.status == "active"
        assert snapshot.tier_key == "pro"
        assert snapshot.external_price_id == "price_pro"
        assert snapshot.payment_method_brand == "visa"
        assert snapshot.payment_method_last4 == "4242"
        assert snapshot.period_start == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        intervals = memory_store.list_intervals("cus_1")
        assert len(intervals) == 1
        assert intervals[0].is_active

    def test_converges(self, reconciler, fake_provider, memory_store):
        fake_provider.subscriptions["cus_1"] = [make_subscription()]

        first = reconciler.sync("cus_1")
        second = reconciler.sync("cus_1")

        assert len(memory_store.list_intervals("cus_1")) == 1
        assert second.updated_at > first.updated_at
        assert replace(second, updated_at=first.updated_at) == first

    def test_price_change_transitions_interval(self, reconciler, fake_provider, memory_store):
        fake_provider.subscriptions["cus_1"] = [make_subscription(price_id="price_pro")]
        reconciler.sync("cus_1")
        old = memory_store.get_active_interval("cus_1")

        fake_provider.subscriptions["cus_1"] = [
            make_subscription(price_id="price_premium", start_date=1_701_000_000)
        ]
        snapshot = reconciler.sync("cus_1")

        intervals = memory_store.list_intervals("cus_1")
        assert len(intervals) == 2
        assert intervals[0].id == old.id
        assert intervals[0].ended_at is not None
        active = [i for i in intervals if i.is_active]
        assert len(active) == 1
        assert active[0].external_price_id == "price_premium"
        assert active[0].tier_key == "premium"
        assert active[0].started_at == datetime.fromtimestamp(1_701_000_000, tz=timezone.utc)
        assert snapshot.tier_key == "premium"

    def test_status_change_transitions_interval(self, reconciler, fake_provider, memory_store):
        fake_provider.subscriptions["cus_1"] = [make_subscription(status="trialing")]
        reconciler.sync("cus_1")
        fake_provider.subscriptions["cus_1"] = [make_subscription(status="active")]
        reconciler.sync("cus_1")

        statuses = [i.status for i in memory_store.list_intervals("cus_1")]
        assert statuses == ["trialing", "active"]

    def test_cancel_flag_alone_keeps_interval(self, reconciler, fake_provider, memory_store):
        fake_provider.subscriptions["cus_1"] = [make_subscription()]
        reconciler.sync("cus_1")
        fake_provider.subscriptions["cus_1"] = [make_subscription(cancel_at_period_end=True)]

        snapshot = reconciler.sync("cus_1")

        assert len(memory_store.list_intervals("cus_1")) == 1
        assert snapshot.cancel_at_period_end is True

    def test_no_subscription_is_inactive(self, reconciler, fake_provider, memory_store):
        snapshot = reconciler.sync("cus_new")

        assert snapshot.status == "inactive"
        assert snapshot.external_subscription_id is None
        assert memory_store.list_intervals("cus_new") == []

    def test_unknown_price_has_no_tier(self, reconciler, fake_provider):
        fake_provider.subscriptions["cus_1"] = [make_subscription(price_id="price_legacy")]

        snapshot = reconciler.sync("cus_1")

        assert snapshot.status == "active"
        assert snapshot.tier_key is None

    def test_provider_failure_leaves_state(self, reconciler, fake_provider, memory_store):
        from billing.errors import ProviderError

        fake_provider.subscriptions["cus_1"] = [make_subscription()]
        before = reconciler.sync("cus_1")
        fake_provider.fail_with = ProviderError("timeout")

        with pytest.raises(ProviderError):
            reconciler.sync("cus_1")

        assert memory_store.get_snapshot("cus_1") == before
        assert len(memory_store.list_intervals("cus_1")) == 1

    def test_period_from_item_when_top_level_missing(self, reconciler, fake_provider):
        sub = make_subscription(period_start=None, period_end=None)
        sub["items"]["data"][0].update(current_period_start=1_710_000_000, current_period_end=1_712_000_000)
        fake_provider.subscriptions["cus_1"] = [sub]

        snapshot = reconciler.sync("cus_1")

        assert snapshot.period_start == datetime.fromtimestamp(1_710_000_000, tz=timezone.utc)
        assert snapshot.period_end == datetime.fromtimestamp(1_712_000_000, tz=timezone.utc)

    def test_concurrent_syncs_keep_one_active_interval(self, reconciler, fake_provider, memory_store):
        fake_provider.subscriptions["cus_1"] = [make_subscription()]
        barrier = threading.Barrier(6)

        def run():
            barrier.wait()
            reconciler.sync("cus_1")

        threads = [threading.Thread(target=run) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        intervals = memory_store.list_intervals("cus_1")
        assert len(intervals) == 1
        assert intervals[0].is_active

    def test_history_is_oldest_first(self, reconciler, fake_provider):
        fake_provider.subscriptions["cus_1"] = [make_subscription(status="trialing")]
        reconciler.sync("cus_1")
        fake_provider.subscriptions["cus_1"] = [make_subscription(status="active")]
        reconciler.sync("cus_1")

        history = reconciler.history("cus_1")

        assert [i.status for i in history] == ["trialing", "active"]
        assert history[0].ended_at == history[1].created_at


# =============================================================================
# Writers racing on one store
# =============================================================================


class _RacingStore(InMemoryBillingStore):
    """Runs before_write once, right after the next active-interval read."""

    def __init__(self):
        super().__init__()
        self.before_write = None

    def get_active_interval(self, external_customer_id):
        active = super().get_active_interval(external_customer_id)
        hook, self.before_write = self.before_write, None
        if hook is not None:
            hook()
        return active


def _make_reconciler(store, provider):
    from billing.products import TierResolver
    from billing.reconciler import SubscriptionReconciler

    return SubscriptionReconciler(
        store,
        provider,
        TierResolver({"price_pro": "pro", "price_premium": "premium"}),
        clock=_Clock(),
    )


class TestConcurrentWriters:
    """Reconcilers with separate locks (as in separate processes) on one store."""

    def test_same_state_recorded_by_other_worker(self, fake_provider):
        store = _RacingStore()
        fake_provider.subscriptions["cus_1"] = [make_subscription()]
        ours = _make_reconciler(store, fake_provider)
        theirs = _make_reconciler(store, fake_provider)
        store.before_write = lambda: theirs.sync("cus_1")

        snapshot = ours.sync("cus_1")

        intervals = store.list_intervals("cus_1")
        assert len(intervals) == 1
        assert intervals[0].is_active
        assert snapshot.tier_key == "pro"
        assert store.get_snapshot("cus_1").tier_key == "pro"

    def test_different_state_retried_against_new_interval(self, fake_provider):
        store = _RacingStore()
        fake_provider.subscriptions["cus_1"] = [make_subscription(price_id="price_pro")]
        other_provider = FakeProvider()
        other_provider.subscriptions["cus_1"] = [make_subscription(price_id="price_premium")]
        ours = _make_reconciler(store, fake_provider)
        theirs = _make_reconciler(store, other_provider)
        store.before_write = lambda: theirs.sync("cus_1")

        ours.sync("cus_1")

        intervals = store.list_intervals("cus_1")
        assert [i.external_price_id for i in intervals] == ["price_premium", "price_pro"]
        assert intervals[0].ended_at is not None
        assert [i.is_active for i in intervals] == [False, True]

    def test_gives_up_after_repeated_conflicts(self, fake_provider):
        from billing.reconciler import MAX_INTERVAL_ATTEMPTS

        class AlwaysConflicting(InMemoryBillingStore):
            attempts = 0

            def replace_active_interval(self, interval, expected_active_id):
                self.attempts += 1
                raise ConflictError("moved")

        store = AlwaysConflicting()
        fake_provider.subscriptions["cus_1"] = [make_subscription()]

        with pytest.raises(ConflictError):
            _make_reconciler(store, fake_provider).sync("cus_1")

        assert store.attempts == MAX_INTERVAL_ATTEMPTS
        assert store.get_snapshot("cus_1") is None


class TestMemoryStoreReplace:
    """replace_active_interval on the in-memory store."""

    def _interval(self, price_id, created_at):
        from billing.models import SubscriptionInterval

        return SubscriptionInterval.open(
            external_customer_id="cus_1",
            external_subscription_id="sub_1",
            external_price_id=price_id,
            tier_key=None,
            status="active",
            period_start=None,
            period_end=None,
            cancel_at_period_end=False,
            started_at=None,
            created_at=created_at,
        )

    def test_stale_expected_id_writes_nothing(self, memory_store):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        first = self._interval("price_pro", t0)
        memory_store.replace_active_interval(first, None)

        with pytest.raises(ConflictError):
            memory_store.replace_active_interval(self._interval("price_premium", t0), "int_other")

        assert [i.id for i in memory_store.list_intervals("cus_1")] == [first.id]
        assert memory_store.get_active_interval("cus_1").id == first.id

    def test_closes_expected_interval_at_new_start(self, memory_store):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        first = self._interval("price_pro", t0)
        second = self._interval("price_premium", t0 + timedelta(days=2))
        memory_store.replace_active_interval(first, None)

        memory_store.replace_active_interval(second, first.id)

        intervals = memory_store.list_intervals("cus_1")
        assert intervals[0].ended_at == second.created_at
        assert memory_store.get_active_interval("cus_1").id == second.id
