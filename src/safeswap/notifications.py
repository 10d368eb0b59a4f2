"""Notification boundary.

The core only emits an event name and a payload after a change has been
committed; delivery (toast, email, websocket) belongs to the dispatcher
implementation.
"""

from __future__ import annotations

import enum
import threading
from typing import Any, Protocol, runtime_checkable


class NotificationEvent(str, enum.Enum):
    DEAL_CREATED = "deal_created"
    DEAL_ACCEPTED = "deal_accepted"
    DEAL_FUNDED = "deal_funded"
    MILESTONE_COMPLETED = "milestone_completed"
    MILESTONE_APPROVED = "milestone_approved"
    DEAL_COMPLETED = "deal_completed"
    DEAL_CANCELLED = "deal_cancelled"
    DEAL_REFUNDED = "deal_refunded"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_RESOLVED = "dispute_resolved"
    PAYMENT_RECEIVED = "payment_received"
    TRUST_SCORE_UPDATED = "trust_score_updated"
    KYC_APPROVED = "kyc_approved"
    KYC_REJECTED = "kyc_rejected"


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Fire-and-forget sink for post-commit notifications."""

    def dispatch(self, event_name: str, payload: dict[str, Any]) -> None:
        ...


class NullDispatcher:
    """Drops every notification."""

    def dispatch(self, event_name: str, payload: dict[str, Any]) -> None:
        return None


class RecordingDispatcher:
    """Keeps every notification in memory, in dispatch order."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def dispatch(self, event_name: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.sent.append((event_name, dict(payload)))

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.sent]
