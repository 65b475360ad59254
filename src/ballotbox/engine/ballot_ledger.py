"""Ballot ledger — vote admission and tally.

A vote is admitted only if, at the moment it is cast:
1. The election is OPEN and the time is inside the voting window.
2. The voter is authorized.
3. The voter has not voted.
4. The proposal index exists.

Checks run in that order and the first failure is raised. Nothing is
written until every check has passed, so a rejected vote leaves the
registry, catalog and totals untouched.

Invariant: total_votes == sum(vote counts) == number of voters with
voted=True.
"""

from __future__ import annotations

from datetime import datetime

from ballotbox.engine.clock import ElectionClock
from ballotbox.errors import AlreadyVotedError, NotAuthorizedVoterError
from ballotbox.identity.registry import IdentityRegistry
from ballotbox.models.election import ProposalResult, TallySummary
from ballotbox.proposals.catalog import ProposalCatalog


class BallotLedger:
    """Records votes against the proposal catalog."""

    def __init__(
        self,
        registry: IdentityRegistry,
        catalog: ProposalCatalog,
        clock: ElectionClock,
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._clock = clock
        self._total_votes = 0

    def validate_vote(self, voter_id: str, proposal_id: int, now: datetime) -> None:
        self._clock.validate_window(now)
        if not self._registry.is_authorized(voter_id):
            raise NotAuthorizedVoterError(f"{voter_id!r} is not authorized to vote")
        if self._registry.has_voted(voter_id):
            raise AlreadyVotedError(f"{voter_id!r} has already voted")
        self._catalog.validate_index(proposal_id)

    def record(self, voter_id: str, proposal_id: int) -> None:
        """Apply a validated vote. Cannot fail after validate_vote()."""
        self._registry.mark_voted(voter_id, proposal_id)
        self._catalog.credit_vote(proposal_id)
        self._total_votes += 1

    @property
    def total_votes(self) -> int:
        return self._total_votes

    def results(self) -> list[int]:
        """Vote counts aligned with proposal order."""
        return self._catalog.vote_counts()

    def summary(self) -> TallySummary:
        proposals = self._catalog.all()
        total = sum(p.vote_count for p in proposals)
        results = [
            ProposalResult(
                proposal_id=p.proposal_id,
                name=p.name,
                vote_count=p.vote_count,
                percentage=round(p.vote_count * 100 / total, 1) if total else 0.0,
            )
            for p in proposals
        ]
        leaders: list[int] = []
        if total:
            top = max(p.vote_count for p in proposals)
            leaders = [p.proposal_id for p in proposals if p.vote_count == top]
        return TallySummary(total_votes=total, results=results, leaders=leaders)
