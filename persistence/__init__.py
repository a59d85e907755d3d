# persistence/__init__.py
"""
Persistence layer.

Provides SQLite-backed storage for billing state:
- Customer links
- Subscription interval history
- Processed webhook events (ledger)
- Subscription snapshots
"""

from persistence.db import get_db, init_db, close_db, configure
from persistence.billing import SQLiteBillingStore

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "configure",
    "SQLiteBillingStore",
]
