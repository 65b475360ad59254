"""Proposal catalog — ordered, append-only list of candidate options.

Proposal ids are dense indices assigned at append time (0, 1, 2, ...).
The catalog accepts additions only while the election is in SETUP;
after voting starts it is frozen. Proposals are never removed.
"""

from __future__ import annotations

from dataclasses import replace

from ballotbox.errors import InvalidPhaseError, OutOfRangeError
from ballotbox.models.election import Phase, Proposal


class ProposalCatalog:
    """Append-only proposal list with stable integer indices."""

    def __init__(self) -> None:
        self._proposals: list[Proposal] = []

    @property
    def next_id(self) -> int:
        return len(self._proposals)

    def __len__(self) -> int:
        return len(self._proposals)

    @staticmethod
    def validate_add(phase: Phase) -> None:
        """Raise InvalidPhaseError unless the election is still in SETUP."""
        if phase != Phase.SETUP:
            raise InvalidPhaseError(
                f"Cannot add proposals after voting has started "
                f"(phase: {phase.value})"
            )

    def append(self, name: str, description: str = "", content_ref: str = "") -> Proposal:
        """Append a proposal and return it. Callers validate phase first."""
        proposal = Proposal(
            proposal_id=len(self._proposals),
            name=name,
            description=description,
            content_ref=content_ref,
        )
        self._proposals.append(proposal)
        return replace(proposal)

    def validate_index(self, proposal_id: int) -> None:
        if (
            isinstance(proposal_id, bool)
            or not isinstance(proposal_id, int)
            or not 0 <= proposal_id < len(self._proposals)
        ):
            raise OutOfRangeError(
                f"Invalid proposal id {proposal_id!r}: "
                f"{len(self._proposals)} proposal(s) registered"
            )

    def credit_vote(self, proposal_id: int) -> None:
        """Increment a proposal's vote count. Used by the ballot ledger only."""
        self._proposals[proposal_id].vote_count += 1

    def get(self, proposal_id: int) -> Proposal:
        self.validate_index(proposal_id)
        return replace(self._proposals[proposal_id])

    def all(self) -> list[Proposal]:
        """Ordered snapshot of every proposal."""
        return [replace(p) for p in list(self._proposals)]

    def vote_counts(self) -> list[int]:
        return [p.vote_count for p in list(self._proposals)]
