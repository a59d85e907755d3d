# billing/storage.py
"""
Billing storage port.

The service layer only talks to BillingStore, so the SQLite store
(persistence.billing) and the in-memory store here are interchangeable.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from billing.errors import ConflictError
from billing.models import (
    CustomerLink,
    LedgerEntry,
    SubscriptionInterval,
    SubscriptionSnapshot,
)


class BillingStore(ABC):
    """
    Abstract storage for billing state.

    Implementations must make create_link, create_ledger_entry and
    replace_active_interval atomic check-and-write operations that raise
    ConflictError instead of writing duplicates.
    """

    # Customer links

    @abstractmethod
    def get_link_by_user(self, user_id: str) -> Optional[CustomerLink]:
        ...

    @abstractmethod
    def get_link_by_customer(self, external_customer_id: str) -> Optional[CustomerLink]:
        ...

    @abstractmethod
    def create_link(self, link: CustomerLink) -> None:
        """Persist a link. Raises ConflictError if the user is already linked."""
        ...

    # Subscription intervals

    @abstractmethod
    def get_active_interval(self, external_customer_id: str) -> Optional[SubscriptionInterval]:
        ...

    @abstractmethod
    def close_active_interval(self, external_customer_id: str, ended_at: datetime) -> int:
        """Set ended_at on the open interval. Returns the number of rows closed."""
        ...

    @abstractmethod
    def replace_active_interval(
        self, interval: SubscriptionInterval, expected_active_id: Optional[str]
    ) -> None:
        """
        Close the open interval and open `interval`, as one atomic write.

        The open interval is closed at interval.created_at. expected_active_id
        is the id of the open interval the caller read (None if there was
        none). Raises ConflictError, writing nothing, if the customer's open
        interval is no longer that one.
        """
        ...

    @abstractmethod
    def list_intervals(self, external_customer_id: str) -> list[SubscriptionInterval]:
        """All intervals for a customer, oldest first."""
        ...

    # Event ledger

    @abstractmethod
    def get_ledger_entry(self, provider_event_id: str) -> Optional[LedgerEntry]:
        ...

    @abstractmethod
    def create_ledger_entry(self, entry: LedgerEntry) -> None:
        """Persist an entry. Raises ConflictError if the event ID exists."""
        ...

    # Snapshots

    @abstractmethod
    def upsert_snapshot(self, snapshot: SubscriptionSnapshot) -> None:
        ...

    @abstractmethod
    def get_snapshot(self, external_customer_id: str) -> Optional[SubscriptionSnapshot]:
        ...


class InMemoryBillingStore(BillingStore):
    """
    Thread-safe in-memory billing store.

    Used for tests and local development (BILLING_STORAGE=memory).
    Returned intervals and snapshots are copies, so callers can't
    mutate stored state.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._links_by_user: dict[str, CustomerLink] = {}
        self._links_by_customer: dict[str, CustomerLink] = {}
        self._intervals: dict[str, list[SubscriptionInterval]] = {}
        self._ledger: dict[str, LedgerEntry] = {}
        self._snapshots: dict[str, SubscriptionSnapshot] = {}

    def get_link_by_user(self, user_id: str) -> Optional[CustomerLink]:
        with self._lock:
            return self._links_by_user.get(user_id)

    def get_link_by_customer(self, external_customer_id: str) -> Optional[CustomerLink]:
        with self._lock:
            return self._links_by_customer.get(external_customer_id)

    def create_link(self, link: CustomerLink) -> None:
        with self._lock:
            if link.internal_user_id in self._links_by_user:
                raise ConflictError(f"User {link.internal_user_id} already linked")
            if link.external_customer_id in self._links_by_customer:
                raise ConflictError(f"Customer {link.external_customer_id} already linked")
            self._links_by_user[link.internal_user_id] = link
            self._links_by_customer[link.external_customer_id] = link

    def get_active_interval(self, external_customer_id: str) -> Optional[SubscriptionInterval]:
        with self._lock:
            for interval in self._intervals.get(external_customer_id, []):
                if interval.ended_at is None:
                    return copy.copy(interval)
            return None

    def close_active_interval(self, external_customer_id: str, ended_at: datetime) -> int:
        closed = 0
        with self._lock:
            for interval in self._intervals.get(external_customer_id, []):
                if interval.ended_at is None:
                    interval.ended_at = ended_at
                    closed += 1
        return closed

    def replace_active_interval(
        self, interval: SubscriptionInterval, expected_active_id: Optional[str]
    ) -> None:
        customer_id = interval.external_customer_id
        with self._lock:
            records = self._intervals.setdefault(customer_id, [])
            active = next((r for r in records if r.ended_at is None), None)
            if (active.id if active else None) != expected_active_id:
                raise ConflictError(f"Active interval for {customer_id} changed concurrently")
            if active is not None:
                active.ended_at = interval.created_at
            records.append(copy.copy(interval))

    def list_intervals(self, external_customer_id: str) -> list[SubscriptionInterval]:
        with self._lock:
            return [copy.copy(r) for r in self._intervals.get(external_customer_id, [])]

    def get_ledger_entry(self, provider_event_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            return self._ledger.get(provider_event_id)

    def create_ledger_entry(self, entry: LedgerEntry) -> None:
        with self._lock:
            if entry.provider_event_id in self._ledger:
                raise ConflictError(f"Event {entry.provider_event_id} already recorded")
            self._ledger[entry.provider_event_id] = entry

    def ledger_size(self) -> int:
        with self._lock:
            return len(self._ledger)

    def upsert_snapshot(self, snapshot: SubscriptionSnapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.external_customer_id] = copy.copy(snapshot)

    def get_snapshot(self, external_customer_id: str) -> Optional[SubscriptionSnapshot]:
        with self._lock:
            snapshot = self._snapshots.get(external_customer_id)
            return copy.copy(snapshot) if snapshot else None
