"""Core data models for ballotbox."""

from ballotbox.models.election import (
    ElectionConfig,
    Phase,
    Proposal,
    ProposalResult,
    TallySummary,
    VoterRecord,
)

__all__ = [
    "ElectionConfig",
    "Phase",
    "Proposal",
    "ProposalResult",
    "TallySummary",
    "VoterRecord",
]
