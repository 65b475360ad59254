"""Tests for the append-only event log — hashing, persistence and integrity."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ballotbox.persistence.event_log import (
    EventKind,
    EventLog,
    EventLogError,
    EventRecord,
)

TS = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def _event(n: int, kind: EventKind = EventKind.VOTER_AUTHORIZED) -> EventRecord:
    return EventRecord.create(
        event_id=f"EVT-{n:08d}",
        event_kind=kind,
        actor_id="0xowner",
        payload={"voter_id": f"v{n}"},
        timestamp_utc=TS,
    )


class TestEventRecord:
    def test_hash_is_deterministic(self) -> None:
        assert _event(1).event_hash == _event(1).event_hash
        assert _event(1).event_hash.startswith("sha256:")

    def test_hash_covers_payload(self) -> None:
        a = _event(1)
        b = EventRecord.create(
            event_id=a.event_id,
            event_kind=a.event_kind,
            actor_id=a.actor_id,
            payload={"voter_id": "someone-else"},
            timestamp_utc=TS,
        )
        assert a.event_hash != b.event_hash

    def test_timestamp_round_trips(self) -> None:
        record = _event(1)
        assert record.timestamp_utc == "2026-03-01T09:00:00.000000+00:00"
        assert record.timestamp == TS

    def test_to_dict(self) -> None:
        data = _event(1).to_dict()
        assert data["event_kind"] == "voter_authorized"
        assert data["payload"] == {"voter_id": "v1"}


class TestInMemoryLog:
    def test_append_and_count(self) -> None:
        log = EventLog()
        log.append(_event(1))
        log.append(_event(2))
        assert log.count == 2
        assert log.last_event.event_id == "EVT-00000002"

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        log.append(_event(1))
        with pytest.raises(EventLogError, match="Duplicate"):
            log.append(_event(1))
        assert log.count == 1

    def test_filter_by_kind(self) -> None:
        log = EventLog()
        log.append(_event(1, EventKind.PROPOSAL_ADDED))
        log.append(_event(2))
        log.append(_event(3))
        assert len(log.events(EventKind.VOTER_AUTHORIZED)) == 2
        assert len(log.event_hashes(EventKind.PROPOSAL_ADDED)) == 1

    def test_events_after_cursor(self) -> None:
        log = EventLog()
        for n in range(1, 6):
            log.append(_event(n))
        assert [e.event_id for e in log.events_after(3)] == [
            "EVT-00000004", "EVT-00000005",
        ]
        assert log.events_after(5) == []
        assert len(log.events_after(-1)) == 5

    def test_events_returns_copy(self) -> None:
        log = EventLog()
        log.append(_event(1))
        log.events().clear()
        assert log.count == 1


class TestFilePersistence:
    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(_event(1))
        log.append(_event(2))

        reloaded = EventLog(storage_path=path)
        assert reloaded.count == 2
        assert reloaded.storage_path == path
        assert reloaded.event_hashes() == log.event_hashes()

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "events.jsonl"
        EventLog(storage_path=path).append(_event(1))
        assert path.exists()

    def test_blank_lines_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event(1))
        with path.open("a", encoding="utf-8") as f:
            f.write("\n   \n")
        assert EventLog(storage_path=path).count == 1

    def test_tampered_record_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event(1))
        data = json.loads(path.read_text(encoding="utf-8"))
        data["payload"]["voter_id"] = "mallory"
        path.write_text(json.dumps(data) + "\n", encoding="utf-8")
        with pytest.raises(EventLogError, match="Integrity check failed"):
            EventLog(storage_path=path)

    def test_duplicate_line_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event(1))
        line = path.read_text(encoding="utf-8")
        path.write_text(line + line, encoding="utf-8")
        with pytest.raises(EventLogError, match="Duplicate"):
            EventLog(storage_path=path)

    @pytest.mark.parametrize(
        "line",
        [
            "not json",
            "[]",
            '{"event_id": "EVT-00000001"}',
            '{"event_id": "E", "event_kind": "bogus", "timestamp_utc": "", '
            '"actor_id": "", "payload": {}, "event_hash": ""}',
        ],
    )
    def test_malformed_line_rejected(self, tmp_path: Path, line: str) -> None:
        path = tmp_path / "events.jsonl"
        path.write_text(line + "\n", encoding="utf-8")
        with pytest.raises(EventLogError, match="Malformed"):
            EventLog(storage_path=path)

    def test_write_failure_leaves_memory_unchanged(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        log = EventLog(storage_path=blocker / "events.jsonl")
        with pytest.raises(OSError):
            log.append(_event(1))
        assert log.count == 0


class TestSharedFile:
    def test_stale_handle_cannot_append(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event(1))
        first = EventLog(storage_path=path)
        second = EventLog(storage_path=path)

        first.append(_event(2))
        with pytest.raises(EventLogError, match="another writer"):
            second.append(_event(2, EventKind.PROPOSAL_ADDED))
        assert second.count == 1

        reloaded = EventLog(storage_path=path)
        assert reloaded.count == 2
        assert reloaded.event_hashes() == first.event_hashes()

    def test_fresh_handle_continues(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        stale = EventLog(storage_path=path)
        EventLog(storage_path=path).append(_event(1))
        with pytest.raises(EventLogError):
            stale.append(_event(1))

        fresh = EventLog(storage_path=path)
        fresh.append(_event(2))
        fresh.append(_event(3))
        assert EventLog(storage_path=path).count == 3

    def test_lock_file_beside_log(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event(1))
        assert (tmp_path / "events.jsonl.lock").exists()


class TestInterruptedAppend:
    def _torn(self, tmp_path: Path) -> Path:
        path = tmp_path / "events.jsonl"
        EventLog(storage_path=path).append(_event(1))
        partial = json.dumps(_event(2).to_dict(), sort_keys=True)[:40]
        with path.open("a", encoding="utf-8") as f:
            f.write(partial)
        return path

    def test_unterminated_last_line_discarded(self, tmp_path: Path) -> None:
        path = self._torn(tmp_path)
        log = EventLog(storage_path=path)
        assert log.count == 1
        assert path.read_text(encoding="utf-8").endswith("\n")
        assert len(path.read_text(encoding="utf-8").splitlines()) == 1

    def test_append_after_recovery(self, tmp_path: Path) -> None:
        path = self._torn(tmp_path)
        log = EventLog(storage_path=path)
        log.append(_event(2))
        reloaded = EventLog(storage_path=path)
        assert [e.event_id for e in reloaded.events()] == ["EVT-00000001", "EVT-00000002"]

    def test_corrupt_committed_line_still_rejected(self, tmp_path: Path) -> None:
        path = self._torn(tmp_path)
        with path.open("a", encoding="utf-8") as f:
            f.write("\n")
        with pytest.raises(EventLogError, match="Malformed"):
            EventLog(storage_path=path)
