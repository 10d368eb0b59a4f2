"""Append-only audit log of every committed SafeSwap change.

Deal transitions, escrow movements, KYC reviews and trust updates each
leave one EventRecord here once the change has been committed. Records
are immutable. The log is what support and compliance read, and the
source for rebuilding read models.

A record's ``event_hash`` is the SHA-256 of its canonical JSON (sorted
keys, payload reduced to JSON primitives, money as exact strings), so a
log replayed from its JSONL file is verified line by line and refuses to
load if any line was edited or duplicated.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Optional
from uuid import uuid4

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_HASHED_FIELDS = ("event_id", "event_kind", "timestamp_utc", "actor_id", "payload")


class EventKind(str, enum.Enum):
    USER_REGISTERED = "user_registered"
    KYC_REVIEWED = "kyc_reviewed"
    DEAL_CREATED = "deal_created"
    DEAL_EDITED = "deal_edited"
    DEAL_TRANSITION = "deal_transition"
    MILESTONE_COMPLETED = "milestone_completed"
    MILESTONE_APPROVED = "milestone_approved"
    MILESTONE_DISPUTED = "milestone_disputed"
    # Money movements
    ESCROW_DEPOSITED = "escrow_deposited"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"
    PAYMENT_FAILED = "payment_failed"
    # Disputes and trust
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    TRUST_UPDATED = "trust_updated"


def _to_primitive(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.strftime(_TIMESTAMP_FORMAT)
    if isinstance(value, dict):
        return {str(k): _to_primitive(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_primitive(v) for v in value]
    return value


def _digest(fields: dict[str, Any]) -> str:
    body = json.dumps(
        {name: fields[name] for name in _HASHED_FIELDS},
        sort_keys=True,
        ensure_ascii=False,
    )
    return "sha256:" + hashlib.sha256(body.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EventRecord:
    """One immutable audit entry; ``payload`` holds JSON primitives only."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @classmethod
    def create(
        cls,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        event_id: Optional[str] = None,
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        fields = {
            "event_id": event_id or f"evt_{uuid4().hex[:16]}",
            "event_kind": event_kind.value,
            "timestamp_utc": (timestamp_utc or datetime.now(timezone.utc)).strftime(_TIMESTAMP_FORMAT),
            "actor_id": actor_id,
            "payload": _to_primitive(payload),
        }
        return cls.from_dict({**fields, "event_hash": _digest(fields)})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        return cls(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=data["event_hash"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }

    def computed_hash(self) -> str:
        return _digest(self.to_dict())

    def verify(self) -> bool:
        return self.computed_hash() == self.event_hash


class EventLog:
    """Thread-safe append-only event log, optionally mirrored to JSONL.

    Usage:
        log = EventLog(storage_path=Path("data/events.jsonl"))
        log.append(EventRecord.create(EventKind.DEAL_CREATED, "buyer_1",
                                      {"deal_id": "deal_1"}))
        log.events_for_deal("deal_1")

    An existing file is replayed on construction; a tampered or
    duplicated line raises ValueError and nothing is loaded.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = Path(storage_path) if storage_path else None
        self._lock = threading.Lock()
        self._events: list[EventRecord] = []
        self._seen: set[str] = set()
        if self._storage_path is not None and self._storage_path.exists():
            self._events = list(_replay(self._storage_path))
            self._seen = {e.event_id for e in self._events}

    def append(self, event: EventRecord) -> None:
        """Raises ValueError when ``event.event_id`` was already logged."""
        with self._lock:
            if event.event_id in self._seen:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            if self._storage_path is not None:
                with self._storage_path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False))
                    f.write("\n")
            self._events.append(event)
            self._seen.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        with self._lock:
            snapshot = list(self._events)
        if kind is None:
            return snapshot
        return [e for e in snapshot if e.event_kind == kind]

    def events_for_deal(self, deal_id: str) -> list[EventRecord]:
        return [e for e in self.events() if e.payload.get("deal_id") == deal_id]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        with self._lock:
            return self._events[-1] if self._events else None


def _replay(path: Path) -> Iterator[EventRecord]:
    seen: set[str] = set()
    with path.open("r", encoding="utf-8") as f:
        for line_num, raw in enumerate(f, start=1):
            if not raw.strip():
                continue
            event = EventRecord.from_dict(json.loads(raw))
            if event.event_id in seen:
                raise ValueError(
                    f"Duplicate event ID on recovery (line {line_num}): {event.event_id}"
                )
            if not event.verify():
                raise ValueError(
                    f"Integrity check failed (line {line_num}): event {event.event_id} "
                    f"stored {event.event_hash}, computed {event.computed_hash()}"
                )
            seen.add(event.event_id)
            yield event
