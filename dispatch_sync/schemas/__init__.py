from dispatch_sync.schemas.booking_schema import (
    Booking,
    BookingPatch,
    BookingStatus,
    Coordinate,
    Location,
)
from dispatch_sync.schemas.event_schema import ActorRole, ChannelEvent
from dispatch_sync.schemas.worker_schema import VerificationStatus, WorkerProfile

__all__ = [
    "Booking", "BookingPatch", "BookingStatus", "Coordinate", "Location",
    "ActorRole", "ChannelEvent", "VerificationStatus", "WorkerProfile",
]
