"""Per-key exclusive locks.

The service serialises all writes to one deal under ``deal:<id>`` and
all trust-score writes for one user under ``user:<id>``. Different keys
never contend, so operations on different deals run fully in parallel.

A key can be retired once its deal is closed. The lock is dropped when
its last holder or waiter leaves, so the map stays bounded by the number
of open deals and users rather than growing with every deal ever seen.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLocks:
    """Hands out one re-entrant lock per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._holders: dict[str, int] = {}
        self._retired: set[str] = set()
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            return self._lock_locked(key)

    def _lock_locked(self, key: str) -> threading.RLock:
        lock = self._locks.get(key)
        if lock is None:
            lock = threading.RLock()
            self._locks[key] = lock
        return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._lock_locked(key)
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                remaining = self._holders[key] - 1
                if remaining:
                    self._holders[key] = remaining
                else:
                    del self._holders[key]
                    if key in self._retired:
                        self._retired.discard(key)
                        self._locks.pop(key, None)

    def retire(self, key: str) -> None:
        """Drop the lock for ``key`` once nobody holds or waits on it."""
        with self._guard:
            if key not in self._locks:
                return
            if self._holders.get(key):
                self._retired.add(key)
            else:
                del self._locks[key]

    @staticmethod
    def deal_key(deal_id: str) -> str:
        return f"deal:{deal_id}"

    @staticmethod
    def user_key(user_id: str) -> str:
        return f"user:{user_id}"

    def __len__(self) -> int:
        return len(self._locks)
