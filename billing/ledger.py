# billing/ledger.py
"""
Processed-event ledger.

Existence of an entry for a provider event ID is the idempotency witness:
the webhook path records an event before acting on it and skips events
it has already seen.
"""

from __future__ import annotations

import logging

from billing.errors import ConflictError
from billing.models import LedgerEntry
from billing.storage import BillingStore

_logger = logging.getLogger(__name__)


class EventLedger:
    """Append-only record of provider events that have been processed."""

    def __init__(self, store: BillingStore):
        self._store = store

    def has_processed(self, provider_event_id: str) -> bool:
        return self._store.get_ledger_entry(provider_event_id) is not None

    def record(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Record an event as processed.

        Atomic with respect to concurrent deliveries of the same event:
        exactly one caller succeeds.

        Raises:
            ConflictError: If the event ID was already recorded
        """
        try:
            self._store.create_ledger_entry(entry)
        except ConflictError:
            _logger.info(
                f"Event {entry.provider_event_id} already recorded",
                extra={"event_id": entry.provider_event_id},
            )
            raise

        _logger.info(
            f"Recorded event {entry.event_type}",
            extra={
                "event_id": entry.provider_event_id,
                "customer_id": entry.external_customer_id,
            },
        )
        return entry
