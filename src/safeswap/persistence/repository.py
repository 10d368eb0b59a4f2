"""Storage abstraction for users and deals.

The core never keeps process-wide mutable arrays. It talks to a
Repository, so tests use the in-memory store and production can plug
in a persistent one without touching deal or trust logic.

Optimistic versioning: every stored entity carries a ``version``.
``save(entity, expected_version)`` succeeds only if the stored version
still equals ``expected_version``; otherwise a concurrent writer got
there first and StaleVersion (an InvalidState failure) is raised.
Readers always receive copies, so nothing outside ``save`` can change
stored state.
"""

from __future__ import annotations

import copy
import threading
from typing import Callable, Generic, Optional, Protocol, TypeVar, runtime_checkable

from safeswap.errors import InvalidState, StaleVersion

T = TypeVar("T")


@runtime_checkable
class Repository(Protocol[T]):
    """Minimal store interface consumed by the service layer."""

    def get(self, entity_id: str) -> Optional[T]:
        ...

    def save(self, entity: T, expected_version: Optional[int]) -> T:
        ...

    def find_by(self, predicate: Callable[[T], bool]) -> list[T]:
        ...


class InMemoryRepository(Generic[T]):
    """Dict-backed repository with version checks.

    Usage:
        deals = InMemoryRepository[Deal]("deal_id")
        stored = deals.save(deal, expected_version=None)   # insert
        working = deals.get(stored.deal_id)
        working.title = "New title"
        deals.save(working, expected_version=working.version)
    """

    def __init__(self, id_attr: str) -> None:
        self._id_attr = id_attr
        self._items: dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, entity_id: str) -> Optional[T]:
        with self._lock:
            item = self._items.get(entity_id)
            return copy.deepcopy(item) if item is not None else None

    def save(self, entity: T, expected_version: Optional[int]) -> T:
        """Insert (expected_version=None) or update a versioned entity.

        On success the entity's version is bumped and a copy of the
        stored state is returned.
        """
        entity_id = getattr(entity, self._id_attr)
        with self._lock:
            current = self._items.get(entity_id)
            if expected_version is None:
                if current is not None:
                    raise InvalidState(
                        f"Entity already exists: {entity_id}", {"id": entity_id},
                    )
                new_version = 1
            else:
                if current is None:
                    raise StaleVersion(
                        f"Entity {entity_id} does not exist", {"id": entity_id},
                    )
                stored_version = getattr(current, "version")
                if stored_version != expected_version:
                    raise StaleVersion(
                        f"Entity {entity_id} was modified concurrently "
                        f"(expected version {expected_version}, found {stored_version})",
                        {
                            "id": entity_id,
                            "expected_version": expected_version,
                            "stored_version": stored_version,
                        },
                    )
                new_version = expected_version + 1
            stored = copy.deepcopy(entity)
            setattr(stored, "version", new_version)
            self._items[entity_id] = stored
            setattr(entity, "version", new_version)
            return copy.deepcopy(stored)

    def find_by(self, predicate: Callable[[T], bool]) -> list[T]:
        with self._lock:
            return [copy.deepcopy(i) for i in self._items.values() if predicate(i)]

    def all(self) -> list[T]:
        return self.find_by(lambda _: True)

    @property
    def count(self) -> int:
        return len(self._items)
