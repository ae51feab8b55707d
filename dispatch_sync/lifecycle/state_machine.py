"""
Finite state machine for the booking lifecycle.

Defines the client-observed booking statuses and the explicit transitions
between them. Customer and worker sessions share this vocabulary; both use
the same monotonic status ranking to reconcile out-of-order deliveries.

Usage:
    lc = BookingLifecycle(BookingStatus.PENDING)
    lc.transition(LifecycleEvent.ACCEPT)
    assert lc.current_status == BookingStatus.ACCEPTED
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from dispatch_sync.schemas.booking_schema import BookingStatus

logger = logging.getLogger(__name__)


class LifecycleEvent(str, Enum):
    """Actions that move a booking between statuses."""
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    ARRIVE = "arrive"
    START_WORK = "start_work"
    COMPLETE = "complete"


TERMINAL_STATUSES: frozenset[BookingStatus] = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
})

# Statuses no delta may leave. ``rejected`` is the implicit rejected-by-all
# outcome; it never appears in the transition table but is equally final.
ABSORBING_STATUSES: frozenset[BookingStatus] = TERMINAL_STATUSES | {BookingStatus.REJECTED}

# in_progress is the backend's word for active work.
STATUS_RANK: dict[BookingStatus, int] = {
    BookingStatus.PENDING: 0,
    BookingStatus.ACCEPTED: 1,
    BookingStatus.ARRIVED: 2,
    BookingStatus.IN_PROGRESS: 3,
    BookingStatus.WORKING: 3,
    BookingStatus.COMPLETED: 4,
    BookingStatus.CANCELLED: 5,
    BookingStatus.REJECTED: 5,
}


def status_rank(status: BookingStatus) -> int:
    return STATUS_RANK[status]


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_absorbing(status: BookingStatus) -> bool:
    return status in ABSORBING_STATUSES


@dataclass
class Transition:
    """A single valid status transition."""
    from_status: BookingStatus
    to_status: BookingStatus
    event: LifecycleEvent
    guard: Optional[Callable[[], bool]] = None


@dataclass
class StatusEntry:
    """Recorded history entry for a status visit."""
    status: BookingStatus
    entered_at: datetime
    event: Optional[LifecycleEvent] = None


class InvalidTransitionError(Exception):
    """Raised when a transition is not valid from the current status."""


class TerminalStateError(InvalidTransitionError):
    """Raised when anything tries to move a booking out of a terminal status."""


class BookingLifecycle:
    """
    Deterministic state machine for one booking's status.

    Every transition must be explicitly defined. Terminal statuses accept
    no events at all; callers receiving server events for a terminal
    booking are expected to log and discard rather than apply them.
    """

    TRANSITIONS: list[Transition] = [
        # --- Claim ---
        Transition(BookingStatus.PENDING, BookingStatus.ACCEPTED, LifecycleEvent.ACCEPT),
        Transition(BookingStatus.PENDING, BookingStatus.PENDING, LifecycleEvent.REJECT),

        # --- Requester cancellation ---
        Transition(BookingStatus.PENDING, BookingStatus.CANCELLED, LifecycleEvent.CANCEL),
        Transition(BookingStatus.ACCEPTED, BookingStatus.CANCELLED, LifecycleEvent.CANCEL),
        Transition(BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, LifecycleEvent.CANCEL),
        Transition(BookingStatus.ARRIVED, BookingStatus.CANCELLED, LifecycleEvent.CANCEL),
        Transition(BookingStatus.WORKING, BookingStatus.CANCELLED, LifecycleEvent.CANCEL),

        # --- Job progress ---
        Transition(BookingStatus.ACCEPTED, BookingStatus.ARRIVED, LifecycleEvent.ARRIVE),
        Transition(BookingStatus.IN_PROGRESS, BookingStatus.ARRIVED, LifecycleEvent.ARRIVE),
        Transition(BookingStatus.ARRIVED, BookingStatus.WORKING, LifecycleEvent.START_WORK),
        Transition(BookingStatus.WORKING, BookingStatus.COMPLETED, LifecycleEvent.COMPLETE),
        Transition(BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED, LifecycleEvent.COMPLETE),
    ]

    def __init__(self, initial: BookingStatus = BookingStatus.PENDING) -> None:
        self._current_status = initial
        self._history: list[StatusEntry] = [
            StatusEntry(status=initial, entered_at=datetime.now(timezone.utc))
        ]

    @property
    def current_status(self) -> BookingStatus:
        return self._current_status

    def can_transition(self, event: LifecycleEvent) -> bool:
        return event in self.get_valid_events()

    def transition(self, event: LifecycleEvent) -> BookingStatus:
        """
        Execute a status transition.

        Args:
            event: The action triggering the transition.

        Returns:
            The new booking status.

        Raises:
            TerminalStateError: If the booking is already terminal.
            InvalidTransitionError: If no valid transition exists.
        """
        if is_absorbing(self._current_status):
            raise TerminalStateError(
                f"Booking is '{self._current_status.value}'; "
                f"event '{event.value}' cannot be applied"
            )

        for t in self.TRANSITIONS:
            if t.from_status == self._current_status and t.event == event:
                if t.guard is not None and not t.guard():
                    continue

                old_status = self._current_status
                self._current_status = t.to_status
                self._history.append(StatusEntry(
                    status=self._current_status,
                    entered_at=datetime.now(timezone.utc),
                    event=event,
                ))
                logger.debug(
                    "Status transition: %s -> %s (event: %s)",
                    old_status.value, self._current_status.value, event.value,
                )
                return self._current_status

        valid = [e.value for e in self.get_valid_events()]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_status.value}' "
            f"with event '{event.value}'. Valid events: {valid}"
        )

    def get_valid_events(self) -> list[LifecycleEvent]:
        """Return all events valid from the current status."""
        return [t.event for t in self.TRANSITIONS if t.from_status == self._current_status]

    def get_history(self) -> list[StatusEntry]:
        return list(self._history)

    def get_status_trace(self) -> list[str]:
        """Return ordered list of status names visited."""
        return [entry.status.value for entry in self._history]

    def is_terminal(self) -> bool:
        return is_terminal(self._current_status)
