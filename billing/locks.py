# billing/locks.py
"""
Per-key mutual exclusion.

Used to serialize reconciliation writes per customer and first-time
customer creation per user, without a global lock.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLock:
    """
    A lock per key, created on demand and discarded when unused.

    Usage:
        locks = KeyedLock()
        with locks.hold("cus_123"):
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders+waiters]
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def active_keys(self) -> int:
        """Number of keys currently held or waited on."""
        with self._guard:
            return len(self._locks)
