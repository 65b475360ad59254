"""Identity registry — who may vote and who already has.

Records are keyed by opaque account identity. A record is created the
first time an identity is authorized; identities never seen read as
unauthorized and not voted.

Invariants enforced:
- authorized flips False → True only, never back.
- authorized cannot be granted to an identity that has already voted,
  nor once the election is CLOSED.
- voted flips False → True exactly once.

Caller privilege (owner-only) is checked by the election state machine,
not here.
"""

from __future__ import annotations

from dataclasses import replace

from ballotbox.errors import AlreadyVotedError, InvalidPhaseError
from ballotbox.models.election import Phase, VoterRecord


class IdentityRegistry:
    """Registry of voter records.

    Thread-safety: this class is not thread-safe. The election state
    machine serialises every mutation.
    """

    def __init__(self) -> None:
        self._voters: dict[str, VoterRecord] = {}

    def validate_authorize(self, phase: Phase, voter_id: str) -> None:
        """Authorization is open in SETUP and OPEN, for identities that have not voted."""
        if phase == Phase.CLOSED:
            raise InvalidPhaseError("Cannot authorize voters after voting has ended")
        record = self._voters.get(voter_id)
        if record is not None and record.voted:
            raise AlreadyVotedError(f"Voter {voter_id!r} has already voted")

    def grant(self, voter_id: str) -> bool:
        """Mark an identity authorized.

        Returns True if the record changed, False if it was already
        authorized. Callers must run validate_authorize() first.
        """
        record = self._voters.get(voter_id)
        if record is None:
            self._voters[voter_id] = VoterRecord(voter_id=voter_id, authorized=True)
            return True
        if record.authorized:
            return False
        record.authorized = True
        return True

    def mark_voted(self, voter_id: str, proposal_id: int) -> None:
        """Record that an authorized identity cast its vote."""
        record = self._voters[voter_id]
        record.voted = True
        record.chosen_proposal = proposal_id

    def is_authorized(self, voter_id: str) -> bool:
        record = self._voters.get(voter_id)
        return record is not None and record.authorized

    def has_voted(self, voter_id: str) -> bool:
        record = self._voters.get(voter_id)
        return record is not None and record.voted

    def get(self, voter_id: str) -> VoterRecord:
        """Return a copy of the identity's record (default if unknown)."""
        record = self._voters.get(voter_id)
        if record is None:
            return VoterRecord(voter_id=voter_id)
        return replace(record)

    def records(self) -> list[VoterRecord]:
        return [replace(r) for r in list(self._voters.values())]

    def authorized_count(self) -> int:
        return sum(1 for r in list(self._voters.values()) if r.authorized)
