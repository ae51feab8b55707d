from dispatch_sync.lifecycle.navigation import (
    NavigationPhase,
    NavigationState,
    NavigationTrigger,
    estimate_eta_minutes,
)
from dispatch_sync.lifecycle.state_machine import (
    BookingLifecycle,
    InvalidTransitionError,
    LifecycleEvent,
    TerminalStateError,
    is_terminal,
    status_rank,
)

__all__ = [
    "BookingLifecycle",
    "LifecycleEvent",
    "InvalidTransitionError",
    "TerminalStateError",
    "is_terminal",
    "status_rank",
    "NavigationPhase",
    "NavigationState",
    "NavigationTrigger",
    "estimate_eta_minutes",
]
