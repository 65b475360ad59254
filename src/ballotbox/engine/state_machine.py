"""Election state machine — the single entry point for every mutation.

Phase lifecycle:
    SETUP → OPEN → CLOSED

Every mutating call follows the same order under one lock:
1. Caller privilege (owner-only operations).
2. Phase and time-window guards, delegated to the component that owns them.
3. Durable append of the event record. If this fails, nothing has been
   applied and the call fails.
4. Apply to exactly one of {catalog, registry, ledger, clock}. Guards
   have already passed, so this step cannot fail.

Listeners are notified after the lock is released, once the mutation is
fully committed. A listener that calls back into the election therefore
never sees a half-applied vote.

Fail-closed: a rejected call raises an ElectionError and leaves both the
election and its event log unchanged.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from ballotbox.engine.ballot_ledger import BallotLedger
from ballotbox.engine.clock import ElectionClock, ManualClock, TimeSource, system_time
from ballotbox.errors import ElectionError, ReplayError, UnauthorizedError
from ballotbox.identity.registry import IdentityRegistry
from ballotbox.models.election import (
    ElectionConfig,
    Phase,
    Proposal,
    TallySummary,
    VoterRecord,
)
from ballotbox.persistence.event_log import EventKind, EventLog, EventRecord
from ballotbox.proposals.catalog import ProposalCatalog

logger = logging.getLogger(__name__)

Listener = Callable[[EventRecord], None]


class ElectionStateMachine:
    """One election: configuration, phase, proposals, voters and tally.

    Usage:
        election = ElectionStateMachine.create("Board 2026", 60, owner="0xabc")
        election.add_proposal("0xabc", "Alice", "Treasurer")
        election.authorize("0xabc", "0xdef")
        election.start_voting("0xabc")
        election.vote("0xdef", 0)
        # ... after the window elapses ...
        election.end_voting("0xabc")

    Mutations are serialised by an internal lock. Reads take no lock and
    return copies of committed state.
    """

    def __init__(
        self,
        config: ElectionConfig,
        time_source: Optional[TimeSource] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._config = config
        self._clock = ElectionClock(config.duration, time_source)
        self._registry = IdentityRegistry()
        self._catalog = ProposalCatalog()
        self._ledger = BallotLedger(self._registry, self._catalog, self._clock)
        self._event_log = event_log if event_log is not None else EventLog()
        self._event_counter = self._event_log.count
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()

    @classmethod
    def create(
        cls,
        title: str,
        duration_minutes: int,
        owner: str,
        time_source: Optional[TimeSource] = None,
        event_log: Optional[EventLog] = None,
    ) -> ElectionStateMachine:
        """Create a new election in SETUP, owned by ``owner``.

        Raises ValueError for a blank title or owner, a non-positive
        duration, or an event log that already holds records.
        """
        config = ElectionConfig.from_minutes(title, owner, duration_minutes)
        if event_log is not None and event_log.count:
            raise ValueError(
                f"Event log already holds {event_log.count} event(s); "
                f"open the existing election instead"
            )
        election = cls(config, time_source=time_source, event_log=event_log)
        with election._lock:
            election._record(
                EventKind.ELECTION_CREATED,
                owner,
                {
                    "title": config.title,
                    "owner": config.owner,
                    "duration_seconds": int(config.duration.total_seconds()),
                },
                election._clock.now(),
            )
        logger.info(
            "Election %r created by %s (%s)", config.title, owner, config.duration,
        )
        return election

    @classmethod
    def from_events(
        cls,
        events: Iterable[EventRecord],
        time_source: Optional[TimeSource] = None,
        event_log: Optional[EventLog] = None,
    ) -> ElectionStateMachine:
        """Rebuild an election by replaying its event records.

        Each record is re-applied through the normal guards at its own
        timestamp, and the regenerated records must hash identically to
        the originals. A log that was reordered, truncated in the middle,
        or records a transition the guards reject raises ReplayError.

        Args:
            events: Records in log order, starting with ELECTION_CREATED.
            time_source: Clock used after replay (default: system time).
            event_log: Log to keep appending to after replay. Normally
                the log the events came from.
        """
        events = list(events)
        if not events or events[0].event_kind != EventKind.ELECTION_CREATED:
            raise ReplayError("Event log must start with an election_created record")

        head = events[0]
        try:
            config = ElectionConfig(
                title=head.payload["title"],
                owner=head.payload["owner"],
                duration=timedelta(seconds=head.payload["duration_seconds"]),
            )
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise ReplayError(f"{head.event_id}: invalid election_created record: {e}") from e
        if head.actor_id != config.owner:
            raise ReplayError(
                f"{head.event_id}: election created by {head.actor_id!r} "
                f"but owned by {config.owner!r}"
            )

        replay_clock = ManualClock(head.timestamp)
        election = cls(config, time_source=replay_clock)
        with election._lock:
            election._record(EventKind.ELECTION_CREATED, head.actor_id, head.payload, head.timestamp)

            for event in events[1:]:
                replay_clock.set(event.timestamp)
                try:
                    election._replay_one(event)
                except ElectionError as e:
                    raise ReplayError(f"{event.event_id}: {e.code}: {e}") from e
                except (KeyError, TypeError) as e:
                    raise ReplayError(f"{event.event_id}: malformed payload: {e}") from e

            regenerated = election._event_log.events()
            for original, replayed in zip(events, regenerated):
                if original.event_hash != replayed.event_hash:
                    raise ReplayError(
                        f"{original.event_id}: replay produced a different record "
                        f"({replayed.event_hash} != {original.event_hash})"
                    )
            if len(regenerated) != len(events):
                raise ReplayError(
                    f"Replay produced {len(regenerated)} records from {len(events)}"
                )

            election._clock.use_time_source(time_source or system_time)
            if event_log is not None:
                election._event_log = event_log
                election._event_counter = event_log.count

        logger.info("Replayed %d events for election %r", len(events), config.title)
        return election

    def _replay_one(self, event: EventRecord) -> None:
        payload = event.payload
        kind = event.event_kind
        if kind == EventKind.PROPOSAL_ADDED:
            proposal_id = self.add_proposal(
                event.actor_id,
                payload["name"],
                payload.get("description", ""),
                payload.get("content_ref", ""),
            )
            if proposal_id != payload["proposal_id"]:
                raise ReplayError(
                    f"{event.event_id}: proposal id {payload['proposal_id']} "
                    f"replayed as {proposal_id}"
                )
        elif kind == EventKind.VOTER_AUTHORIZED:
            self.authorize(event.actor_id, payload["voter_id"])
        elif kind == EventKind.VOTING_STARTED:
            self.start_voting(event.actor_id)
        elif kind == EventKind.VOTE_CAST:
            if payload["voter_id"] != event.actor_id:
                raise ReplayError(f"{event.event_id}: vote cast on behalf of another identity")
            self.vote(event.actor_id, payload["proposal_id"])
        elif kind == EventKind.VOTING_ENDED:
            self.end_voting(event.actor_id)
        else:
            raise ReplayError(f"{event.event_id}: unexpected {kind.value} record")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_proposal(
        self,
        caller_id: str,
        name: str,
        description: str = "",
        content_ref: str = "",
    ) -> int:
        """Append a proposal during SETUP. Returns its id."""
        with self._lock:
            self._require_owner(caller_id, "add proposals")
            self._catalog.validate_add(self._clock.phase)
            proposal_id = self._catalog.next_id
            record = self._record(
                EventKind.PROPOSAL_ADDED,
                caller_id,
                {
                    "proposal_id": proposal_id,
                    "name": name,
                    "description": description,
                    "content_ref": content_ref,
                },
                self._clock.now(),
            )
            self._catalog.append(name, description, content_ref)
        logger.info("Proposal %d added: %r", proposal_id, name)
        self._notify(record)
        return proposal_id

    def authorize(self, caller_id: str, voter_id: str) -> bool:
        """Authorize an identity to vote, in SETUP or OPEN.

        Idempotent: re-authorizing returns False and records nothing.
        Returns True when the identity was newly authorized.
        """
        with self._lock:
            self._require_owner(caller_id, "authorize voters")
            if not voter_id:
                raise ValueError("Voter identity cannot be empty")
            self._registry.validate_authorize(self._clock.phase, voter_id)
            if self._registry.is_authorized(voter_id):
                logger.debug("Voter %s already authorized", voter_id)
                return False
            record = self._record(
                EventKind.VOTER_AUTHORIZED,
                caller_id,
                {"voter_id": voter_id},
                self._clock.now(),
            )
            self._registry.grant(voter_id)
        logger.info("Voter %s authorized (phase: %s)", voter_id, self._clock.phase.value)
        self._notify(record)
        return True

    def start_voting(self, caller_id: str) -> datetime:
        """Open the voting window now. Returns the start time."""
        with self._lock:
            self._require_owner(caller_id, "start voting")
            self._clock.validate_start(len(self._catalog))
            now = self._clock.now()
            record = self._record(
                EventKind.VOTING_STARTED,
                caller_id,
                {
                    "start_time": now.isoformat(),
                    "duration_seconds": int(self._config.duration.total_seconds()),
                },
                now,
            )
            self._clock.open(now)
        logger.info("Voting started at %s for %s", now.isoformat(), self._config.duration)
        self._notify(record)
        return now

    def vote(self, voter_id: str, proposal_id: int) -> None:
        """Cast ``voter_id``'s single vote for ``proposal_id``."""
        with self._lock:
            now = self._clock.now()
            self._ledger.validate_vote(voter_id, proposal_id, now)
            record = self._record(
                EventKind.VOTE_CAST,
                voter_id,
                {"voter_id": voter_id, "proposal_id": proposal_id},
                now,
            )
            self._ledger.record(voter_id, proposal_id)
        logger.info("Vote cast by %s for proposal %d", voter_id, proposal_id)
        self._notify(record)

    def end_voting(self, caller_id: str) -> int:
        """Close the election once the window has elapsed. Returns the total."""
        with self._lock:
            self._require_owner(caller_id, "end voting")
            now = self._clock.now()
            self._clock.validate_end(now)
            total = self._ledger.total_votes
            record = self._record(
                EventKind.VOTING_ENDED,
                caller_id,
                {"end_time": now.isoformat(), "total_votes": total},
                now,
            )
            self._clock.close(now)
        logger.info("Voting ended at %s with %d vote(s)", now.isoformat(), total)
        self._notify(record)
        return total

    def subscribe(self, listener: Listener) -> None:
        """Register a callback invoked with each committed event record."""
        with self._lock:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._config.owner

    @property
    def title(self) -> str:
        return self._config.title

    @property
    def duration(self) -> timedelta:
        return self._config.duration

    @property
    def phase(self) -> Phase:
        return self._clock.phase

    @property
    def start_time(self) -> Optional[datetime]:
        return self._clock.start_time

    @property
    def end_time(self) -> Optional[datetime]:
        return self._clock.end_time

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    def is_open(self) -> bool:
        """True from start_voting() until end_voting().

        Stays True after the window elapses until the owner ends voting;
        use time_remaining() to tell whether votes are still accepted.
        """
        return self._clock.phase == Phase.OPEN

    def get_proposals(self) -> list[Proposal]:
        return self._catalog.all()

    def get_proposal(self, proposal_id: int) -> Proposal:
        return self._catalog.get(proposal_id)

    def proposals_count(self) -> int:
        return len(self._catalog)

    def get_results(self) -> list[int]:
        return self._ledger.results()

    def total_votes(self) -> int:
        return self._ledger.total_votes

    def summary(self) -> TallySummary:
        return self._ledger.summary()

    def time_remaining(self) -> int:
        return self._clock.time_remaining()

    def is_authorized(self, voter_id: str) -> bool:
        return self._registry.is_authorized(voter_id)

    def has_voted(self, voter_id: str) -> bool:
        return self._registry.has_voted(voter_id)

    def voter(self, voter_id: str) -> VoterRecord:
        return self._registry.get(voter_id)

    def authorized_count(self) -> int:
        return self._registry.authorized_count()

    def events_after(self, cursor: int) -> list[EventRecord]:
        return self._event_log.events_after(cursor)

    def check_invariants(self) -> list[str]:
        """Verify the ledger's structural invariants. Empty list = healthy."""
        with self._lock:
            errors: list[str] = []
            proposals = self._catalog.all()
            counts = [p.vote_count for p in proposals]
            records = self._registry.records()
            voted = [r for r in records if r.voted]
            total = self._ledger.total_votes
            phase = self._clock.phase

            if [p.proposal_id for p in proposals] != list(range(len(proposals))):
                errors.append("Proposal ids are not dense and ordered")
            if any(c < 0 for c in counts):
                errors.append("Negative vote count")
            if not (total == sum(counts) == len(voted)):
                errors.append(
                    f"Tally mismatch: total_votes={total}, "
                    f"sum(vote_count)={sum(counts)}, voters_voted={len(voted)}"
                )
            chosen = Counter(r.chosen_proposal for r in voted)
            for p in proposals:
                if chosen.get(p.proposal_id, 0) != p.vote_count:
                    errors.append(
                        f"Proposal {p.proposal_id}: vote_count {p.vote_count} != "
                        f"{chosen.get(p.proposal_id, 0)} recorded choices"
                    )
            for r in voted:
                if not r.authorized:
                    errors.append(f"Voter {r.voter_id!r} voted without authorization")

            start = self._clock.start_time
            if phase == Phase.SETUP and (start is not None or total):
                errors.append("SETUP election has a start time or votes")
            if phase != Phase.SETUP and start is None:
                errors.append(f"{phase.value} election has no start time")
            if phase == Phase.CLOSED and self._clock.end_time is None:
                errors.append("CLOSED election has no end time")

            errors.extend(self._check_event_order())
            return errors

    def _check_event_order(self) -> list[str]:
        errors: list[str] = []
        started: Optional[datetime] = None
        ended = False
        deadline: Optional[datetime] = None
        for event in self._event_log.events():
            kind = event.event_kind
            if kind == EventKind.PROPOSAL_ADDED and started is not None:
                errors.append(f"{event.event_id}: proposal added after voting started")
            elif kind == EventKind.VOTING_STARTED:
                if started is not None:
                    errors.append(f"{event.event_id}: voting started twice")
                started = event.timestamp
                deadline = started + self._config.duration
            elif kind == EventKind.VOTE_CAST:
                if started is None or ended or deadline is None:
                    errors.append(f"{event.event_id}: vote outside the OPEN phase")
                elif not started <= event.timestamp < deadline:
                    errors.append(f"{event.event_id}: vote outside the voting window")
            elif kind == EventKind.VOTING_ENDED:
                if started is None or ended:
                    errors.append(f"{event.event_id}: voting ended out of order")
                ended = True
        return errors

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_owner(self, caller_id: str, action: str) -> None:
        if caller_id != self._config.owner:
            raise UnauthorizedError(f"Only the owner can {action}")

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        return f"EVT-{self._event_counter + 1:08d}"

    def _record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> EventRecord:
        """Append an event record. Raises on log failure, before any apply."""
        record = EventRecord.create(
            event_id=self._next_event_id(),
            event_kind=kind,
            actor_id=actor_id,
            payload=payload,
            timestamp_utc=now,
        )
        self._event_log.append(record)
        self._event_counter += 1
        return record

    def _notify(self, record: EventRecord) -> None:
        # Runs outside the lock: the mutation is already committed and a
        # failing listener must not undo it.
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception(
                    "Listener %r failed on %s", listener, record.event_id,
                )
