"""Election engine — clock, ballot ledger and the orchestrating state machine."""

from ballotbox.engine.ballot_ledger import BallotLedger
from ballotbox.engine.clock import ElectionClock, ManualClock
from ballotbox.engine.state_machine import ElectionStateMachine

__all__ = ["BallotLedger", "ElectionClock", "ElectionStateMachine", "ManualClock"]
