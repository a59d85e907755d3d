# persistence/billing.py
"""
SQLite-backed billing store.

Uniqueness (one link per user, one ledger entry per event, one open
interval per customer) is enforced by the schema, so concurrent writers
across threads or processes get a ConflictError instead of duplicates.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from billing.errors import ConflictError
from billing.models import (
    CustomerLink,
    LedgerEntry,
    SubscriptionInterval,
    SubscriptionSnapshot,
)
from billing.storage import BillingStore
from persistence.db import get_db, init_db

_logger = logging.getLogger(__name__)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _bool(value: Optional[bool]) -> Optional[int]:
    return None if value is None else int(value)


def _parse_bool(value: Optional[int]) -> Optional[bool]:
    return None if value is None else bool(value)


def _row_to_link(row) -> CustomerLink:
    return CustomerLink(
        internal_user_id=row["internal_user_id"],
        external_customer_id=row["external_customer_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_interval(row) -> SubscriptionInterval:
    return SubscriptionInterval(
        id=row["id"],
        external_customer_id=row["external_customer_id"],
        external_subscription_id=row["external_subscription_id"],
        external_price_id=row["external_price_id"],
        tier_key=row["tier_key"],
        status=row["status"],
        period_start=_parse_ts(row["period_start"]),
        period_end=_parse_ts(row["period_end"]),
        cancel_at_period_end=_parse_bool(row["cancel_at_period_end"]),
        started_at=_parse_ts(row["started_at"]),
        ended_at=_parse_ts(row["ended_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_ledger_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        provider_event_id=row["provider_event_id"],
        event_type=row["event_type"],
        external_customer_id=row["external_customer_id"],
        raw_payload=json.loads(row["raw_payload"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_snapshot(row) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        external_customer_id=row["external_customer_id"],
        external_subscription_id=row["external_subscription_id"],
        status=row["status"],
        tier_key=row["tier_key"],
        external_price_id=row["external_price_id"],
        period_start=_parse_ts(row["period_start"]),
        period_end=_parse_ts(row["period_end"]),
        cancel_at_period_end=_parse_bool(row["cancel_at_period_end"]),
        payment_method_brand=row["payment_method_brand"],
        payment_method_last4=row["payment_method_last4"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class SQLiteBillingStore(BillingStore):
    """BillingStore over the shared SQLite database (see persistence.db)."""

    def __init__(self):
        init_db()

    # Customer links

    def get_link_by_user(self, user_id: str) -> Optional[CustomerLink]:
        init_db()
        with get_db() as conn:
            row = conn.execute(
                "SELECT * FROM customer_links WHERE internal_user_id = ?",
                (user_id,),
            ).fetchone()
        return _row_to_link(row) if row else None

    def get_link_by_customer(self, external_customer_id: str) -> Optional[CustomerLink]:
        init_db()
        with get_db() as conn:
            row = conn.execute(
                "SELECT * FROM customer_links WHERE external_customer_id = ?",
                (external_customer_id,),
            ).fetchone()
        return _row_to_link(row) if row else None

    def create_link(self, link: CustomerLink) -> None:
        init_db()
        try:
            with get_db() as conn:
                conn.execute(
                    """
                    INSERT INTO customer_links (internal_user_id, external_customer_id, created_at)
                    VALUES (?, ?, ?)
                    """,
                    (link.internal_user_id, link.external_customer_id, link.created_at.isoformat()),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Customer link for user {link.internal_user_id} already exists") from e

    # Subscription intervals

    def get_active_interval(self, external_customer_id: str) -> Optional[SubscriptionInterval]:
        init_db()
        with get_db() as conn:
            row = conn.execute(
                """
                SELECT * FROM subscription_intervals
                WHERE external_customer_id = ? AND ended_at IS NULL
                """,
                (external_customer_id,),
            ).fetchone()
        return _row_to_interval(row) if row else None

    def close_active_interval(self, external_customer_id: str, ended_at: datetime) -> int:
        init_db()
        with get_db() as conn:
            cursor = conn.execute(
                """
                UPDATE subscription_intervals SET ended_at = ?
                WHERE external_customer_id = ? AND ended_at IS NULL
                """,
                (ended_at.isoformat(), external_customer_id),
            )
            return cursor.rowcount

    def replace_active_interval(
        self, interval: SubscriptionInterval, expected_active_id: Optional[str]
    ) -> None:
        """
        Close the expected open interval and insert the new one.

        Both statements share one transaction; a conflict on either rolls
        back both, so the previous interval stays open.
        """
        init_db()
        customer_id = interval.external_customer_id
        try:
            with get_db() as conn:
                if expected_active_id is not None:
                    cursor = conn.execute(
                        """
                        UPDATE subscription_intervals SET ended_at = ?
                        WHERE id = ? AND external_customer_id = ? AND ended_at IS NULL
                        """,
                        (interval.created_at.isoformat(), expected_active_id, customer_id),
                    )
                    if cursor.rowcount != 1:
                        raise ConflictError(
                            f"Active interval for {customer_id} changed concurrently"
                        )
                conn.execute(
                    """
                    INSERT INTO subscription_intervals (
                        id, external_customer_id, external_subscription_id,
                        external_price_id, tier_key, status, period_start,
                        period_end, cancel_at_period_end, started_at,
                        ended_at, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        interval.id,
                        customer_id,
                        interval.external_subscription_id,
                        interval.external_price_id,
                        interval.tier_key,
                        interval.status,
                        _ts(interval.period_start),
                        _ts(interval.period_end),
                        _bool(interval.cancel_at_period_end),
                        _ts(interval.started_at),
                        _ts(interval.ended_at),
                        interval.created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Customer {customer_id} already has an active interval") from e

    def list_intervals(self, external_customer_id: str) -> list[SubscriptionInterval]:
        init_db()
        with get_db() as conn:
            rows = conn.execute(
                """
                SELECT * FROM subscription_intervals
                WHERE external_customer_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (external_customer_id,),
            ).fetchall()
        return [_row_to_interval(row) for row in rows]

    # Event ledger

    def get_ledger_entry(self, provider_event_id: str) -> Optional[LedgerEntry]:
        init_db()
        with get_db() as conn:
            row = conn.execute(
                "SELECT * FROM ledger_entries WHERE provider_event_id = ?",
                (provider_event_id,),
            ).fetchone()
        return _row_to_ledger_entry(row) if row else None

    def create_ledger_entry(self, entry: LedgerEntry) -> None:
        init_db()
        try:
            with get_db() as conn:
                conn.execute(
                    """
                    INSERT INTO ledger_entries (
                        id, provider_event_id, event_type,
                        external_customer_id, raw_payload, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.provider_event_id,
                        entry.event_type,
                        entry.external_customer_id,
                        json.dumps(entry.raw_payload),
                        entry.created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Event {entry.provider_event_id} already recorded") from e

    def count_ledger_entries(self) -> int:
        init_db()
        with get_db() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM ledger_entries").fetchone()
        return row["n"]

    # Snapshots

    def upsert_snapshot(self, snapshot: SubscriptionSnapshot) -> None:
        init_db()
        with get_db() as conn:
            conn.execute(
                """
                INSERT INTO subscription_snapshots (
                    external_customer_id, external_subscription_id, status,
                    tier_key, external_price_id, period_start, period_end,
                    cancel_at_period_end, payment_method_brand,
                    payment_method_last4, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_customer_id) DO UPDATE SET
                    external_subscription_id = excluded.external_subscription_id,
                    status = excluded.status,
                    tier_key = excluded.tier_key,
                    external_price_id = excluded.external_price_id,
                    period_start = excluded.period_start,
                    period_end = excluded.period_end,
                    cancel_at_period_end = excluded.cancel_at_period_end,
                    payment_method_brand = excluded.payment_method_brand,
                    payment_method_last4 = excluded.payment_method_last4,
                    updated_at = excluded.updated_at
                """,
                (
                    snapshot.external_customer_id,
                    snapshot.external_subscription_id,
                    snapshot.status,
                    snapshot.tier_key,
                    snapshot.external_price_id,
                    _ts(snapshot.period_start),
                    _ts(snapshot.period_end),
                    _bool(snapshot.cancel_at_period_end),
                    snapshot.payment_method_brand,
                    snapshot.payment_method_last4,
                    snapshot.updated_at.isoformat(),
                ),
            )

    def get_snapshot(self, external_customer_id: str) -> Optional[SubscriptionSnapshot]:
        init_db()
        with get_db() as conn:
            row = conn.execute(
                "SELECT * FROM subscription_snapshots WHERE external_customer_id = ?",
                (external_customer_id,),
            ).fetchone()
        return _row_to_snapshot(row) if row else None
