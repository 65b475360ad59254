"""Election service — facade over the election state machine.

This is the primary interface for programmatic and CLI access. It:
- Creates a new election or reopens a persisted one by replaying its
  event log.
- Converts rejected operations into typed ServiceResult values carrying
  the error code, instead of exceptions.
- Produces plain-dict views of reads for JSON output.

The state machine remains the only writer of election state and of the
event log. Audit events are never silently dropped: if the log cannot
be written, the operation fails and nothing is applied.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from ballotbox.engine.clock import TimeSource
from ballotbox.engine.state_machine import ElectionStateMachine
from ballotbox.errors import ElectionError
from ballotbox.persistence.event_log import EventLog, EventLogError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation.

    code is the ElectionError code (e.g. "InvalidPhase") on a rejected
    call, "EventLogFailure" when the audit record could not be written,
    and None on success.
    """
    success: bool
    errors: list[str] = field(default_factory=list)
    code: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


class ElectionService:
    """Unified election facade.

    Usage:
        service = ElectionService.create("Board 2026", 60, owner="0xabc",
                                         event_log=EventLog(path))
        service.add_proposal("0xabc", "Alice")
        service.authorize("0xabc", "0xdef")
        service.start_voting("0xabc")
        service.vote("0xdef", 0)

    Reopening:
        service = ElectionService.open(EventLog(path))
    """

    def __init__(self, election: ElectionStateMachine) -> None:
        self._election = election

    @classmethod
    def create(
        cls,
        title: str,
        duration_minutes: int,
        owner: str,
        event_log: Optional[EventLog] = None,
        time_source: Optional[TimeSource] = None,
    ) -> ElectionService:
        """Create a new election. Raises ValueError on invalid arguments."""
        return cls(ElectionStateMachine.create(
            title, duration_minutes, owner,
            time_source=time_source, event_log=event_log,
        ))

    @classmethod
    def open(
        cls,
        event_log: EventLog,
        time_source: Optional[TimeSource] = None,
    ) -> ElectionService:
        """Reopen an election by replaying its log. Raises ReplayError."""
        return cls(ElectionStateMachine.from_events(
            event_log.events(), time_source=time_source, event_log=event_log,
        ))

    @classmethod
    def from_path(
        cls,
        path: Path,
        time_source: Optional[TimeSource] = None,
    ) -> ElectionService:
        """Reopen the election persisted at ``path``."""
        if not path.exists():
            raise FileNotFoundError(f"No election found at {path}")
        return cls.open(EventLog(storage_path=path), time_source=time_source)

    @property
    def election(self) -> ElectionStateMachine:
        return self._election

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_proposal(
        self,
        caller_id: str,
        name: str,
        description: str = "",
        content_ref: str = "",
    ) -> ServiceResult:
        return self._call(
            "add_proposal",
            lambda: {"proposal_id": self._election.add_proposal(
                caller_id, name, description, content_ref,
            )},
        )

    def authorize(self, caller_id: str, voter_id: str) -> ServiceResult:
        return self._call(
            "authorize",
            lambda: {
                "voter_id": voter_id,
                "newly_authorized": self._election.authorize(caller_id, voter_id),
            },
        )

    def start_voting(self, caller_id: str) -> ServiceResult:
        def _start() -> dict[str, Any]:
            started = self._election.start_voting(caller_id)
            return {
                "start_time": started.isoformat(),
                "time_remaining": self._election.time_remaining(),
            }
        return self._call("start_voting", _start)

    def vote(self, voter_id: str, proposal_id: int) -> ServiceResult:
        def _vote() -> dict[str, Any]:
            self._election.vote(voter_id, proposal_id)
            return {"voter_id": voter_id, "proposal_id": proposal_id}
        return self._call("vote", _vote)

    def end_voting(self, caller_id: str) -> ServiceResult:
        return self._call(
            "end_voting",
            lambda: {"total_votes": self._election.end_voting(caller_id)},
        )

    def _call(
        self, action: str, operation: Callable[[], dict[str, Any]],
    ) -> ServiceResult:
        try:
            data = operation()
        except ElectionError as e:
            logger.info("%s rejected: %s: %s", action, e.code, e)
            return ServiceResult(success=False, errors=[str(e)], code=e.code)
        except (EventLogError, OSError) as e:
            logger.error("%s failed to record audit event: %s", action, e)
            return ServiceResult(
                success=False,
                errors=[f"Event log failure: {e}"],
                code="EventLogFailure",
            )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)], code="InvalidArgument")
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        e = self._election
        return {
            "title": e.title,
            "owner": e.owner,
            "phase": e.phase.value,
            "is_open": e.is_open(),
            "duration_minutes": int(e.duration.total_seconds() // 60),
            "start_time": e.start_time.isoformat() if e.start_time else None,
            "end_time": e.end_time.isoformat() if e.end_time else None,
            "time_remaining": e.time_remaining(),
            "proposals_count": e.proposals_count(),
            "authorized_voters": e.authorized_count(),
            "total_votes": e.total_votes(),
            "event_count": e.event_log.count,
        }

    def proposals(self) -> list[dict[str, Any]]:
        return [asdict(p) for p in self._election.get_proposals()]

    def proposal(self, proposal_id: int) -> ServiceResult:
        try:
            return ServiceResult(
                success=True, data=asdict(self._election.get_proposal(proposal_id)),
            )
        except ElectionError as e:
            return ServiceResult(success=False, errors=[str(e)], code=e.code)

    def results(self) -> dict[str, Any]:
        summary = self._election.summary()
        return {
            "results": self._election.get_results(),
            "total_votes": summary.total_votes,
            "proposals": [asdict(r) for r in summary.results],
            "leaders": summary.leaders,
        }

    def voter(self, voter_id: str) -> dict[str, Any]:
        return asdict(self._election.voter(voter_id))

    def events(self, after: int = 0) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self._election.events_after(after)]

    def check_invariants(self) -> list[str]:
        return self._election.check_invariants()
