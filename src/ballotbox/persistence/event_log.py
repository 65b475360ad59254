"""Election event log — one immutable record per accepted mutation.

The log is the election's notification stream, its audit trail and the
input to replay. Its first record is always ELECTION_CREATED, so a log
file on its own is enough to rebuild the election.

On disk the log is JSONL, one record per line, written before the
in-memory copy is updated. Loading re-derives every hash and refuses
a file containing an altered record or a repeated event id.

A record is committed once its terminating newline is on disk. An
unterminated last line is what an interrupted append leaves behind: its
mutation never took effect, so loading cuts it off instead of refusing
the file.

Loads and appends run under FileLock. An append also refuses to write
if the file has grown since this log last read or wrote it, so two
handles on one file can never both record the same next event id.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ballotbox.persistence.file_lock import FileLock

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    ELECTION_CREATED = "election_created"
    PROPOSAL_ADDED = "proposal_added"
    VOTER_AUTHORIZED = "voter_authorized"
    VOTING_STARTED = "voting_started"
    VOTE_CAST = "vote_cast"
    VOTING_ENDED = "voting_ended"


class EventLogError(ValueError):
    """Integrity failure: altered record, repeated id or unreadable line."""


def _digest(fields: dict[str, Any]) -> str:
    body = json.dumps(fields, sort_keys=True, ensure_ascii=False)
    return "sha256:" + hashlib.sha256(body.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EventRecord:
    """An accepted mutation.

    timestamp_utc keeps microseconds so that replay re-runs each window
    check at exactly the instant it originally passed.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        when = (timestamp_utc or datetime.now(timezone.utc)).astimezone(timezone.utc)
        stamp = when.isoformat(timespec="microseconds")
        return EventRecord(
            event_id, event_kind, stamp, actor_id, payload,
            _digest({
                "event_id": event_id,
                "event_kind": event_kind.value,
                "timestamp_utc": stamp,
                "actor_id": actor_id,
                "payload": payload,
            }),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        """Parse a stored record. Raises KeyError/TypeError/ValueError."""
        return cls(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=data["event_hash"],
        )

    @property
    def timestamp(self) -> datetime:
        return datetime.fromisoformat(self.timestamp_utc)

    def expected_hash(self) -> str:
        fields = self.to_dict()
        del fields["event_hash"]
        return _digest(fields)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Ordered election records, in memory and optionally in a JSONL file.

    A storage_path that already exists is loaded and verified on
    construction. Appends go to the file first; if that write fails the
    in-memory log does not change.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._path = storage_path
        self._records: list[EventRecord] = []
        self._ids: set[str] = set()
        self._synced_size = 0  # bytes of the file this log has accounted for
        if storage_path is not None and storage_path.exists():
            with FileLock(storage_path):
                self._load(storage_path)

    @property
    def storage_path(self) -> Optional[Path]:
        return self._path

    @property
    def count(self) -> int:
        return len(self._records)

    @property
    def last_event(self) -> Optional[EventRecord]:
        if not self._records:
            return None
        return self._records[-1]

    def append(self, event: EventRecord) -> None:
        """Add a record.

        Raises EventLogError on a repeated id or when another writer has
        appended to the file since it was loaded, and OSError on I/O.
        """
        if event.event_id in self._ids:
            raise EventLogError(f"Duplicate event ID: {event.event_id}")
        if self._path is not None:
            with FileLock(self._path):
                self._write_line(event)
        self._records.append(event)
        self._ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        return self.events_after(0, kind)

    def events_after(
        self,
        cursor: int,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        """Records past ``cursor``, the number a poller has already seen."""
        return [
            e for e in self._records[max(cursor, 0):]
            if kind is None or e.event_kind == kind
        ]

    def event_hashes(self, kind: Optional[EventKind] = None) -> list[str]:
        return [e.event_hash for e in self.events(kind)]

    def _write_line(self, event: EventRecord) -> None:
        on_disk = self._path.stat().st_size if self._path.exists() else 0
        if on_disk != self._synced_size:
            logger.warning(
                "Refusing to append %s: %s changed on disk (%d bytes, expected %d)",
                event.event_id, self._path, on_disk, self._synced_size,
            )
            raise EventLogError(
                f"Event log {self._path} was appended to by another writer; "
                f"reopen the election and retry"
            )
        line = json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False)
        data = (line + "\n").encode("utf-8")
        with self._path.open("ab") as f:
            f.write(data)
        self._synced_size = on_disk + len(data)

    def _load(self, path: Path) -> None:
        content = path.read_bytes()
        committed = content.rfind(b"\n") + 1
        if committed < len(content):
            logger.warning(
                "Discarding %d byte(s) of an interrupted append at the end of %s",
                len(content) - committed, path,
            )
            with path.open("r+b") as f:
                f.truncate(committed)
        self._synced_size = committed

        for line_num, raw in enumerate(content[:committed].split(b"\n"), 1):
            if not raw.strip():
                continue
            try:
                event = EventRecord.from_dict(json.loads(raw.decode("utf-8")))
            except (KeyError, TypeError, ValueError) as e:
                logger.error("Unreadable record at %s:%d", path, line_num)
                raise EventLogError(
                    f"Malformed event record (line {line_num}): {e}"
                ) from e

            if event.event_id in self._ids:
                raise EventLogError(
                    f"Duplicate event ID on recovery (line {line_num}): {event.event_id}"
                )
            computed = event.expected_hash()
            if computed != event.event_hash:
                logger.error(
                    "Integrity check failed for %s at %s:%d",
                    event.event_id, path, line_num,
                )
                raise EventLogError(
                    f"Integrity check failed (line {line_num}): {event.event_id} "
                    f"stored {event.event_hash}, computed {computed}"
                )
            self._records.append(event)
            self._ids.add(event.event_id)
        logger.debug("Loaded %d event(s) from %s", len(self._records), path)
