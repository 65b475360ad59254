"""Tests for ElectionService — proves the facade maps outcomes correctly."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ballotbox.engine.clock import ManualClock
from ballotbox.persistence.event_log import EventLog, EventRecord
from ballotbox.service import ElectionService

OWNER = "0xowner"
START = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class _BrokenLog(EventLog):
    def __init__(self) -> None:
        super().__init__()
        self.broken = False

    def append(self, event: EventRecord) -> None:
        if self.broken:
            raise OSError("read-only file system")
        super().append(event)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def service(clock: ManualClock) -> ElectionService:
    return ElectionService.create("Board", 10, OWNER, time_source=clock)


def _open(service: ElectionService) -> None:
    assert service.add_proposal(OWNER, "Alice", "Treasurer").success
    assert service.add_proposal(OWNER, "Bob", "Secretary").success
    assert service.authorize(OWNER, "v1").success
    assert service.authorize(OWNER, "v2").success
    assert service.start_voting(OWNER).success


class TestMutations:
    def test_add_proposal_returns_id(self, service: ElectionService) -> None:
        assert service.add_proposal(OWNER, "Alice").data == {"proposal_id": 0}
        assert service.add_proposal(OWNER, "Bob").data == {"proposal_id": 1}

    def test_authorize_reports_newly_authorized(self, service: ElectionService) -> None:
        first = service.authorize(OWNER, "v1")
        second = service.authorize(OWNER, "v1")
        assert first.data["newly_authorized"] is True
        assert second.success
        assert second.data["newly_authorized"] is False

    def test_start_reports_window(self, service: ElectionService) -> None:
        service.add_proposal(OWNER, "Alice")
        result = service.start_voting(OWNER)
        assert result.success
        assert result.data == {"start_time": START.isoformat(), "time_remaining": 600}

    def test_vote_and_end(self, service: ElectionService, clock: ManualClock) -> None:
        _open(service)
        assert service.vote("v1", 1).success
        clock.advance(minutes=10)
        result = service.end_voting(OWNER)
        assert result.success
        assert result.data == {"total_votes": 1}


class TestRejections:
    @pytest.mark.parametrize(
        "call, code",
        [
            (lambda s: s.add_proposal("intruder", "X"), "Unauthorized"),
            (lambda s: s.authorize("intruder", "v9"), "Unauthorized"),
            (lambda s: s.vote("v9", 0), "NotAuthorizedVoter"),
            (lambda s: s.vote("v1", 5), "OutOfRange"),
            (lambda s: s.start_voting(OWNER), "InvalidPhase"),
            (lambda s: s.end_voting(OWNER), "WindowNotElapsed"),
            (lambda s: s.add_proposal(OWNER, "Late"), "InvalidPhase"),
            (lambda s: s.authorize(OWNER, ""), "InvalidArgument"),
            (lambda s: s.authorize("intruder", ""), "Unauthorized"),
        ],
    )
    def test_error_codes(self, service: ElectionService, call, code: str) -> None:
        _open(service)
        count = service.status()["event_count"]
        result = call(service)
        assert not result.success
        assert result.code == code
        assert result.errors
        assert service.status()["event_count"] == count

    def test_double_vote(self, service: ElectionService) -> None:
        _open(service)
        service.vote("v1", 0)
        result = service.vote("v1", 1)
        assert result.code == "AlreadyVoted"

    def test_start_without_proposals(self, service: ElectionService) -> None:
        assert service.start_voting(OWNER).code == "EmptyProposalSet"

    def test_event_log_failure(self, clock: ManualClock) -> None:
        log = _BrokenLog()
        service = ElectionService.create("Board", 10, OWNER, event_log=log, time_source=clock)
        log.broken = True
        result = service.add_proposal(OWNER, "Alice")
        assert not result.success
        assert result.code == "EventLogFailure"
        assert service.status()["proposals_count"] == 0

    def test_create_rejects_bad_arguments(self) -> None:
        with pytest.raises(ValueError):
            ElectionService.create("", 10, OWNER)


class TestReads:
    def test_status(self, service: ElectionService, clock: ManualClock) -> None:
        status = service.status()
        assert status["phase"] == "setup"
        assert status["is_open"] is False
        assert status["duration_minutes"] == 10
        assert status["start_time"] is None
        assert status["event_count"] == 1

        _open(service)
        clock.advance(minutes=4)
        status = service.status()
        assert status["phase"] == "open"
        assert status["is_open"] is True
        assert status["time_remaining"] == 360
        assert status["proposals_count"] == 2
        assert status["authorized_voters"] == 2

    def test_proposals(self, service: ElectionService) -> None:
        _open(service)
        service.vote("v2", 0)
        proposals = service.proposals()
        assert proposals[0] == {
            "proposal_id": 0, "name": "Alice", "description": "Treasurer",
            "content_ref": "", "vote_count": 1,
        }
        assert service.proposal(1).data["name"] == "Bob"
        missing = service.proposal(2)
        assert not missing.success
        assert missing.code == "OutOfRange"

    def test_results(self, service: ElectionService) -> None:
        _open(service)
        service.vote("v1", 1)
        service.vote("v2", 1)
        results = service.results()
        assert results["results"] == [0, 2]
        assert results["total_votes"] == 2
        assert results["leaders"] == [1]
        assert [p["percentage"] for p in results["proposals"]] == [0.0, 100.0]

    def test_voter(self, service: ElectionService) -> None:
        _open(service)
        service.vote("v1", 0)
        assert service.voter("v1") == {
            "voter_id": "v1", "authorized": True, "voted": True, "chosen_proposal": 0,
        }
        assert service.voter("nobody")["authorized"] is False

    def test_events_after(self, service: ElectionService) -> None:
        _open(service)
        events = service.events(after=5)
        assert [e["event_kind"] for e in events] == ["voting_started"]
        assert len(service.events()) == 6

    def test_check_invariants(self, service: ElectionService) -> None:
        _open(service)
        assert service.check_invariants() == []


class TestPersistence:
    def test_from_path_missing(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            ElectionService.from_path(tmp_path / "events.jsonl")

    def test_from_path_reopens(self, tmp_path: Path, clock: ManualClock) -> None:
        path = tmp_path / "events.jsonl"
        service = ElectionService.create(
            "Board", 10, OWNER, event_log=EventLog(storage_path=path), time_source=clock,
        )
        _open(service)
        service.vote("v1", 0)

        clock.advance(timedelta(minutes=2))
        reopened = ElectionService.from_path(path, time_source=clock)
        assert reopened.results()["results"] == [1, 0]
        assert reopened.vote("v1", 1).code == "AlreadyVoted"
        assert reopened.vote("v2", 1).success
        assert ElectionService.from_path(path).results()["results"] == [1, 1]

    def test_second_handle_on_same_file(self, tmp_path: Path, clock: ManualClock) -> None:
        path = tmp_path / "events.jsonl"
        service = ElectionService.create(
            "Board", 10, OWNER, event_log=EventLog(storage_path=path), time_source=clock,
        )
        _open(service)

        first = ElectionService.from_path(path, time_source=clock)
        second = ElectionService.from_path(path, time_source=clock)
        assert first.vote("v1", 0).success
        result = second.vote("v2", 0)
        assert not result.success
        assert result.code == "EventLogFailure"
        assert not second.election.has_voted("v2")

        reopened = ElectionService.from_path(path, time_source=clock)
        assert reopened.results()["results"] == [1, 0]
        assert reopened.vote("v2", 1).success
        assert ElectionService.from_path(path).check_invariants() == []
