# persistence/db.py
"""
SQLite database connection and schema management.

Uses a file-based SQLite database for billing state.
In containers, put BILLING_DB_PATH on a persistent volume.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

_logger = logging.getLogger(__name__)

# Database file location (configurable via env var)
DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "billing.db"
DB_PATH = Path(os.environ.get("BILLING_DB_PATH", str(DEFAULT_DB_PATH)))

# Connection pool (one connection per thread)
_local = threading.local()
_init_lock = threading.Lock()
_initialized = False


def configure(path: Union[str, Path]) -> None:
    """
    Point the database at a new file.

    Existing thread-local connections reconnect on next use.
    """
    global DB_PATH, _initialized

    with _init_lock:
        DB_PATH = Path(path)
        _initialized = False
    close_db()


def _get_connection() -> sqlite3.Connection:
    """Get thread-local database connection for the current DB_PATH."""
    conn: Optional[sqlite3.Connection] = getattr(_local, "connection", None)
    if conn is not None and getattr(_local, "path", None) != DB_PATH:
        conn.close()
        conn = None

    if conn is None:
        # Ensure directory exists
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(DB_PATH),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        # Return rows as dicts
        conn.row_factory = sqlite3.Row
        _local.connection = conn
        _local.path = DB_PATH

    return conn


@contextmanager
def get_db() -> Iterator[sqlite3.Connection]:
    """
    Get database connection context manager.

    Commits on success, rolls back on any exception.

    Usage:
        with get_db() as conn:
            cursor = conn.execute("SELECT ...")
    """
    conn = _get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_db() -> None:
    """
    Initialize database schema.

    Creates tables if they don't exist.
    Safe to call multiple times (idempotent).
    """
    global _initialized

    with _init_lock:
        if _initialized:
            return

        with get_db() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS customer_links (
                    internal_user_id TEXT PRIMARY KEY,
                    external_customer_id TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS subscription_intervals (
                    id TEXT PRIMARY KEY,
                    external_customer_id TEXT NOT NULL,
                    external_subscription_id TEXT,
                    external_price_id TEXT,
                    tier_key TEXT,
                    status TEXT,
                    period_start TEXT,
                    period_end TEXT,
                    cancel_at_period_end INTEGER,
                    started_at TEXT,
                    ended_at TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_intervals_customer
                ON subscription_intervals(external_customer_id, created_at)
            """)
            # At most one open interval per customer
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_intervals_one_active
                ON subscription_intervals(external_customer_id)
                WHERE ended_at IS NULL
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    id TEXT PRIMARY KEY,
                    provider_event_id TEXT NOT NULL UNIQUE,
                    event_type TEXT NOT NULL,
                    external_customer_id TEXT,
                    raw_payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_ledger_customer
                ON ledger_entries(external_customer_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS subscription_snapshots (
                    external_customer_id TEXT PRIMARY KEY,
                    external_subscription_id TEXT,
                    status TEXT,
                    tier_key TEXT,
                    external_price_id TEXT,
                    period_start TEXT,
                    period_end TEXT,
                    cancel_at_period_end INTEGER,
                    payment_method_brand TEXT,
                    payment_method_last4 TEXT,
                    updated_at TEXT NOT NULL
                )
            """)

            _logger.info(f"Database initialized at {DB_PATH}")
            _initialized = True


def close_db() -> None:
    """Close thread-local database connection."""
    if getattr(_local, "connection", None) is not None:
        _local.connection.close()
        _local.connection = None
        _local.path = None


def reset_db() -> None:
    """Reset database (for testing). Drops all tables."""
    global _initialized

    with _init_lock:
        with get_db() as conn:
            conn.execute("DROP TABLE IF EXISTS subscription_snapshots")
            conn.execute("DROP TABLE IF EXISTS ledger_entries")
            conn.execute("DROP TABLE IF EXISTS subscription_intervals")
            conn.execute("DROP TABLE IF EXISTS customer_links")
        _initialized = False


def get_db_path() -> Path:
    """Get the database file path."""
    return DB_PATH
