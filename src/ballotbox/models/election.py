"""Election data models.

An election is a single aggregate:
- ElectionConfig: title, owner and voting window length, fixed at creation.
- Proposal: a candidate option with a dense, stable index.
- VoterRecord: authorization and voting status for one opaque identity.
- Phase: SETUP → OPEN → CLOSED, one-way.

Identities are opaque strings compared by exact equality. They are never
normalised, so "alice" and " alice" are two different participants.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

# start_time + duration must stay a representable datetime
MAX_DURATION = timedelta(days=366 * 100)


class Phase(str, enum.Enum):
    """Election lifecycle phase.

    Progression is one-way. CLOSED is terminal.
    """
    SETUP = "setup"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class ElectionConfig:
    """Immutable election parameters.

    Invariants:
    - title is not blank
    - owner is not blank
    - 0 < duration <= MAX_DURATION
    """
    title: str
    owner: str
    duration: timedelta

    def __post_init__(self) -> None:
        if not self.title or not self.title.strip():
            raise ValueError("Election title cannot be empty")
        if not self.owner:
            raise ValueError("Election owner cannot be empty")
        if self.duration <= timedelta(0):
            raise ValueError(
                f"Voting duration must be positive, got {self.duration}"
            )
        if self.duration > MAX_DURATION:
            raise ValueError(
                f"Voting duration must not exceed {MAX_DURATION.days} days, "
                f"got {self.duration}"
            )

    @classmethod
    def from_minutes(
        cls, title: str, owner: str, duration_minutes: int,
    ) -> ElectionConfig:
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
            raise ValueError(
                f"Voting duration must be whole minutes, got {duration_minutes!r}"
            )
        try:
            duration = timedelta(minutes=duration_minutes)
        except OverflowError as e:
            raise ValueError(
                f"Voting duration out of range: {duration_minutes} minutes"
            ) from e
        return cls(title=title, owner=owner, duration=duration)


@dataclass
class Proposal:
    """A candidate option.

    Everything except vote_count is fixed at creation. vote_count is
    changed only by the ballot ledger when a vote is accepted.
    """
    proposal_id: int
    name: str
    description: str = ""
    content_ref: str = ""  # Opaque off-system reference (e.g. IPFS hash)
    vote_count: int = 0


@dataclass
class VoterRecord:
    """Authorization and voting status for one identity."""
    voter_id: str
    authorized: bool = False
    voted: bool = False
    chosen_proposal: Optional[int] = None  # Meaningful only if voted


@dataclass(frozen=True)
class ProposalResult:
    """Tally line for one proposal."""
    proposal_id: int
    name: str
    vote_count: int
    percentage: float  # Share of total votes, one decimal place


@dataclass(frozen=True)
class TallySummary:
    """Full tally with shares and the leading proposal(s).

    leaders holds every proposal tied at the highest count. It is empty
    while no vote has been cast.
    """
    total_votes: int
    results: list[ProposalResult] = field(default_factory=list)
    leaders: list[int] = field(default_factory=list)
