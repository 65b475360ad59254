"""Election error taxonomy.

Every error aborts the call that raised it with no state change. The
election stays usable after any rejected call. The ``code`` attribute is
a stable identifier that the service layer and CLI surface verbatim.
"""

from __future__ import annotations


class ElectionError(Exception):
    """Base class for rejected election operations."""
    code = "ElectionError"


class UnauthorizedError(ElectionError):
    """Caller lacks the required privilege (owner-only operation)."""
    code = "Unauthorized"


class InvalidPhaseError(ElectionError):
    """Operation attempted outside its lifecycle phase or time window."""
    code = "InvalidPhase"


class AlreadyVotedError(ElectionError):
    code = "AlreadyVoted"


class NotAuthorizedVoterError(ElectionError):
    code = "NotAuthorizedVoter"


class OutOfRangeError(ElectionError):
    """Proposal index does not exist."""
    code = "OutOfRange"


class WindowNotElapsedError(ElectionError):
    """Voting cannot be ended before the window closes."""
    code = "WindowNotElapsed"


class EmptyProposalSetError(ElectionError):
    """Voting cannot start without at least one proposal."""
    code = "EmptyProposalSet"


class ReplayError(Exception):
    """Raised when an event log cannot be replayed into an election."""
