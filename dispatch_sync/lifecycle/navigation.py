"""
Per-job navigation sub-state machine.

Tracks the worker's approach to an accepted job: idle -> navigating ->
arrived -> working -> completed. ``discarded`` is where an interrupted flow
ends (requester cancelled, worker left the job screen).
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from dispatch_sync.lifecycle.state_machine import InvalidTransitionError
from dispatch_sync.schemas.booking_schema import BookingStatus, Coordinate
from dispatch_sync.utils import haversine_km

logger = logging.getLogger(__name__)


class NavigationPhase(str, Enum):
    IDLE = "idle"
    NAVIGATING = "navigating"
    ARRIVED = "arrived"
    WORKING = "working"
    COMPLETED = "completed"
    DISCARDED = "discarded"


class NavigationTrigger(str, Enum):
    START_NAVIGATION = "start_navigation"
    ARRIVE = "arrive"
    START_WORK = "start_work"
    COMPLETE_WORK = "complete_work"
    DISCARD = "discard"


_FINAL_PHASES = frozenset({NavigationPhase.COMPLETED, NavigationPhase.DISCARDED})

_PHASE_TRANSITIONS: dict[tuple[NavigationPhase, NavigationTrigger], NavigationPhase] = {
    (NavigationPhase.IDLE, NavigationTrigger.START_NAVIGATION): NavigationPhase.NAVIGATING,
    (NavigationPhase.NAVIGATING, NavigationTrigger.ARRIVE): NavigationPhase.ARRIVED,
    (NavigationPhase.ARRIVED, NavigationTrigger.START_WORK): NavigationPhase.WORKING,
    (NavigationPhase.WORKING, NavigationTrigger.COMPLETE_WORK): NavigationPhase.COMPLETED,
    (NavigationPhase.IDLE, NavigationTrigger.DISCARD): NavigationPhase.DISCARDED,
    (NavigationPhase.NAVIGATING, NavigationTrigger.DISCARD): NavigationPhase.DISCARDED,
    (NavigationPhase.ARRIVED, NavigationTrigger.DISCARD): NavigationPhase.DISCARDED,
    (NavigationPhase.WORKING, NavigationTrigger.DISCARD): NavigationPhase.DISCARDED,
}


def next_phase(phase: NavigationPhase, trigger: NavigationTrigger) -> NavigationPhase:
    """Resolve a phase transition or raise InvalidTransitionError."""
    try:
        return _PHASE_TRANSITIONS[(phase, trigger)]
    except KeyError:
        valid = [t.value for (p, t) in _PHASE_TRANSITIONS if p == phase]
        raise InvalidTransitionError(
            f"No navigation transition from '{phase.value}' with '{trigger.value}'. "
            f"Valid triggers: {valid}"
        ) from None


def phase_for_status(status: BookingStatus) -> NavigationPhase:
    """Phase to resume in for a job whose server status is already past accepted."""
    if status == BookingStatus.ARRIVED:
        return NavigationPhase.ARRIVED
    if status in (BookingStatus.WORKING, BookingStatus.IN_PROGRESS):
        return NavigationPhase.WORKING
    if status == BookingStatus.COMPLETED:
        return NavigationPhase.COMPLETED
    return NavigationPhase.IDLE


def estimate_eta_minutes(distance_km: float, speed_kmh: float) -> int:
    """Coarse straight-line ETA. A display aid, not a routed estimate."""
    if distance_km <= 0:
        return 0
    return max(1, math.ceil(distance_km / speed_kmh * 60))


@dataclass
class NavigationState:
    """Worker-side tracking state for one accepted booking."""

    booking_id: str
    phase: NavigationPhase = NavigationPhase.IDLE
    worker_coordinate: Optional[Coordinate] = None
    customer_coordinate: Optional[Coordinate] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    work_started_at: Optional[datetime] = None
    degraded: bool = False
    clock: Callable[[], datetime] = field(
        default=lambda: datetime.now(timezone.utc), repr=False
    )

    @property
    def is_final(self) -> bool:
        return self.phase in _FINAL_PHASES

    def advance(self, trigger: NavigationTrigger) -> NavigationPhase:
        old = self.phase
        self.phase = next_phase(self.phase, trigger)
        logger.debug(
            "Navigation %s: %s -> %s", self.booking_id, old.value, self.phase.value
        )
        return self.phase

    @property
    def elapsed_work_seconds(self) -> int:
        """Seconds since work started; derived, never stored."""
        if self.work_started_at is None:
            return 0
        return max(0, int((self.clock() - self.work_started_at).total_seconds()))

    def refresh_estimate(self, speed_kmh: float) -> None:
        """Recompute distance and ETA from the latest coordinate pair.

        While degraded, the displayed estimate stays frozen.
        """
        if self.degraded:
            return
        if self.worker_coordinate is None or self.customer_coordinate is None:
            return
        self.distance_km = haversine_km(
            self.worker_coordinate.latitude, self.worker_coordinate.longitude,
            self.customer_coordinate.latitude, self.customer_coordinate.longitude,
        )
        self.eta_minutes = estimate_eta_minutes(self.distance_km, speed_kmh)
