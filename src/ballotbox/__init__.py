"""ballotbox — single-election ledger with an owner-driven lifecycle."""

__version__ = "0.1.0"
