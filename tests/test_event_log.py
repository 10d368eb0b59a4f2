"""Tests for the audit event log — proves append-only, hashing and recovery."""

import json
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from safeswap.models.deal import DealStatus
from safeswap.persistence.event_log import EventKind, EventLog, EventRecord


def _now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _event(event_id: str = "evt_1", deal_id: str = "deal_1") -> EventRecord:
    return EventRecord.create(
        EventKind.DEAL_TRANSITION,
        actor_id="seller",
        payload={
            "deal_id": deal_id,
            "from_status": DealStatus.CREATED,
            "to_status": DealStatus.ACCEPTED,
            "amount": Decimal("1000.00"),
        },
        event_id=event_id,
        timestamp_utc=_now(),
    )


class TestEventRecord:
    def test_payload_reduced_to_json_primitives(self) -> None:
        event = _event()
        assert event.payload["from_status"] == "created"
        assert event.payload["amount"] == "1000.00"
        assert event.timestamp_utc == "2026-03-01T12:00:00Z"

    def test_hash_is_deterministic(self) -> None:
        assert _event().event_hash == _event().event_hash
        assert _event().event_hash.startswith("sha256:")

    def test_hash_changes_with_payload(self) -> None:
        assert _event(deal_id="deal_1").event_hash != _event(deal_id="deal_2").event_hash

    def test_auto_generated_id(self) -> None:
        event = EventRecord.create(EventKind.DEAL_CREATED, "buyer", {"deal_id": "deal_1"})
        assert event.event_id.startswith("evt_")


class TestEventLog:
    def test_append_and_filter(self) -> None:
        log = EventLog()
        log.append(_event("evt_1"))
        log.append(EventRecord.create(EventKind.DEAL_CREATED, "buyer", {"deal_id": "deal_2"}))
        assert log.count == 2
        assert len(log.events(EventKind.DEAL_TRANSITION)) == 1
        assert [e.event_id for e in log.events_for_deal("deal_1")] == ["evt_1"]
        assert log.last_event.event_kind == EventKind.DEAL_CREATED

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        log.append(_event("evt_1"))
        with pytest.raises(ValueError, match="Duplicate"):
            log.append(_event("evt_1"))
        assert log.count == 1


class TestPersistence:
    def test_jsonl_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(_event("evt_1"))
        log.append(_event("evt_2", deal_id="deal_2"))

        restored = EventLog(storage_path=path)
        assert restored.count == 2
        assert [e.event_id for e in restored.events()] == ["evt_1", "evt_2"]
        assert restored.events()[0].event_hash == log.events()[0].event_hash

    def test_tampered_record_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event("evt_1"))
        record = json.loads(path.read_text(encoding="utf-8"))
        record["payload"]["amount"] = "1.00"
        path.write_text(json.dumps(record) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(storage_path=path)

    def test_duplicate_record_on_recovery_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event("evt_1"))
        line = path.read_text(encoding="utf-8")
        path.write_text(line + line, encoding="utf-8")
        with pytest.raises(ValueError, match="Duplicate event ID on recovery"):
            EventLog(storage_path=path)
