"""Persistence: repositories and the audit event log."""

from safeswap.persistence.event_log import EventKind, EventLog, EventRecord
from safeswap.persistence.repository import InMemoryRepository, Repository

__all__ = [
    "EventKind",
    "EventLog",
    "EventRecord",
    "InMemoryRepository",
    "Repository",
]
