"""Append-only trust update log.

Every trust-score change, automatic or manual, lands here as an
immutable TrustScoreUpdate. Records are never modified or removed; the
current score on a User always equals the new_score of its latest
update (or the initial score if it has none).
"""

from __future__ import annotations

import threading
from typing import Optional

from safeswap.models.trust import TrustScoreUpdate


class TrustUpdateLog:
    """In-memory, append-only store of trust updates.

    Appends from different users may arrive concurrently, so the
    underlying lists are guarded by a single lock.
    """

    def __init__(self) -> None:
        self._updates: list[TrustScoreUpdate] = []
        self._by_user: dict[str, list[TrustScoreUpdate]] = {}
        self._update_ids: set[str] = set()
        self._lock = threading.Lock()

    def append(self, update: TrustScoreUpdate) -> None:
        """Append an update.

        Raises ValueError if update_id is a duplicate.
        """
        with self._lock:
            if update.update_id in self._update_ids:
                raise ValueError(f"Duplicate trust update ID: {update.update_id}")
            self._updates.append(update)
            self._by_user.setdefault(update.user_id, []).append(update)
            self._update_ids.add(update.update_id)

    def for_user(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[TrustScoreUpdate]:
        """Return a user's updates, newest first."""
        with self._lock:
            history = list(reversed(self._by_user.get(user_id, [])))
        end = None if limit is None else offset + limit
        return history[offset:end]

    def latest(self, user_id: str) -> Optional[TrustScoreUpdate]:
        with self._lock:
            history = self._by_user.get(user_id)
            return history[-1] if history else None

    def all(self) -> list[TrustScoreUpdate]:
        with self._lock:
            return list(self._updates)

    @property
    def count(self) -> int:
        return len(self._updates)
