"""Election clock — phase tracking and the voting window.

Phase lifecycle:
    SETUP → OPEN → CLOSED

- SETUP: proposals and voters are registered; no votes.
- OPEN: the window [start_time, start_time + duration) accepts votes.
- CLOSED: terminal. The tally is final.

Time comes from an injected TimeSource (any zero-argument callable
returning an aware UTC datetime). Readings are clamped so the clock
never goes backwards: a wall clock that steps back cannot reopen the
window or make time_remaining() grow.
"""

from __future__ import annotations

import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ballotbox.errors import (
    EmptyProposalSetError,
    InvalidPhaseError,
    WindowNotElapsedError,
)
from ballotbox.models.election import Phase

TimeSource = Callable[[], datetime]


# Valid transitions: {from_phase: to_phase}
_TRANSITIONS: dict[Phase, Optional[Phase]] = {
    Phase.SETUP: Phase.OPEN,
    Phase.OPEN: Phase.CLOSED,
    Phase.CLOSED: None,
}


def system_time() -> datetime:
    return datetime.now(timezone.utc)


class ManualClock:
    """A TimeSource that only moves when told to.

    Used for deterministic tests and for replaying an event log, where
    each event supplies its own timestamp.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        """Move forward by a timedelta or timedelta keyword arguments."""
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now = self._now + step
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when


class ElectionClock:
    """Tracks phase, start time and the remaining voting window."""

    def __init__(
        self,
        duration: timedelta,
        time_source: Optional[TimeSource] = None,
    ) -> None:
        self._duration = duration
        self._time_source = time_source or system_time
        self._phase = Phase.SETUP
        self._start_time: Optional[datetime] = None
        self._end_time: Optional[datetime] = None
        self._last_seen: Optional[datetime] = None
        self._read_lock = threading.Lock()

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def duration(self) -> timedelta:
        return self._duration

    @property
    def start_time(self) -> Optional[datetime]:
        return self._start_time

    @property
    def end_time(self) -> Optional[datetime]:
        return self._end_time

    @property
    def deadline(self) -> Optional[datetime]:
        """First instant at which votes are no longer accepted."""
        if self._start_time is None:
            return None
        return self._start_time + self._duration

    def use_time_source(self, time_source: TimeSource) -> None:
        self._time_source = time_source

    def now(self) -> datetime:
        """Current time, never earlier than any previous reading."""
        reading = self._time_source()
        if reading.tzinfo is None:
            raise ValueError("Time source must return timezone-aware datetimes")
        reading = reading.astimezone(timezone.utc)
        with self._read_lock:
            if self._last_seen is not None and reading < self._last_seen:
                reading = self._last_seen
            self._last_seen = reading
        return reading

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def validate_start(self, proposal_count: int) -> None:
        self._validate_transition(Phase.OPEN)
        if proposal_count == 0:
            raise EmptyProposalSetError(
                "Cannot start voting without at least one proposal"
            )

    def validate_end(self, now: datetime) -> None:
        self._validate_transition(Phase.CLOSED)
        deadline = self.deadline
        if deadline is not None and now < deadline:
            remaining = math.ceil((deadline - now).total_seconds())
            raise WindowNotElapsedError(
                f"Voting window has not elapsed: {remaining}s remaining"
            )

    def validate_window(self, now: datetime) -> None:
        """Raise InvalidPhaseError unless votes are accepted at ``now``."""
        if self._phase != Phase.OPEN:
            raise InvalidPhaseError(
                f"Voting is not open (phase: {self._phase.value})"
            )
        if not self.in_window(now):
            raise InvalidPhaseError("Voting window has closed")

    def _validate_transition(self, target: Phase) -> None:
        if _TRANSITIONS[self._phase] != target:
            raise InvalidPhaseError(
                f"Invalid phase transition: {self._phase.value} → {target.value}"
            )

    # ------------------------------------------------------------------
    # Transitions (callers validate first)
    # ------------------------------------------------------------------

    def open(self, now: datetime) -> None:
        self._start_time = now
        self._phase = Phase.OPEN

    def close(self, now: datetime) -> None:
        self._end_time = now
        self._phase = Phase.CLOSED

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def in_window(self, now: datetime) -> bool:
        deadline = self.deadline
        if self._start_time is None or deadline is None:
            return False
        return self._start_time <= now < deadline

    def time_remaining(self, now: Optional[datetime] = None) -> int:
        """Whole seconds left in the window while OPEN, else 0.

        Rounded up, so the result is 0 exactly when the window has
        elapsed.
        """
        if self._phase != Phase.OPEN:
            return 0
        deadline = self.deadline
        if deadline is None:
            return 0
        if now is None:
            now = self.now()
        return max(0, math.ceil((deadline - now).total_seconds()))
