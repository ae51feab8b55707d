"""Event channel vocabulary and payload schemas."""

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from dispatch_sync.schemas.booking_schema import coerce_ref


class ActorRole(str, Enum):
    """Which side of the marketplace a session acts for."""

    WORKER = "worker"
    USER = "user"


class ChannelEvent(str, Enum):
    """Named events carried on the publish/subscribe channel."""

    AUTHENTICATE = "authenticate"

    BOOKING_REQUEST = "booking:request"
    BOOKING_ACCEPTED = "booking:accepted"
    BOOKING_UPDATED = "booking:updated"
    BOOKING_CANCELLED = "booking:cancelled"
    BOOKING_REJECTED = "booking:rejected"
    BOOKING_DELETED = "booking:deleted"

    WORKER_LOCATION = "worker:location"
    USER_LOCATION = "user:location"

    NAVIGATION_STARTED = "navigation:started"
    NAVIGATION_ARRIVED = "navigation:arrived"
    NAVIGATION_ENDED = "navigation:ended"
    WORK_STARTED = "work:started"
    WORK_COMPLETED = "work:completed"


# Advisory broadcasts: informative only, never applied as booking state.
ADVISORY_EVENTS: frozenset[ChannelEvent] = frozenset({
    ChannelEvent.NAVIGATION_STARTED,
    ChannelEvent.NAVIGATION_ARRIVED,
    ChannelEvent.NAVIGATION_ENDED,
    ChannelEvent.WORK_STARTED,
    ChannelEvent.WORK_COMPLETED,
})


class ChannelFrame(BaseModel):
    """One JSON frame on the wire: ``{"event": ..., "data": ...}``."""

    event: str
    data: Any = None


class _BookingRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    booking_id: str = Field(
        validation_alias=AliasChoices("bookingId", "_id", "id"),
        serialization_alias="bookingId",
        min_length=1,
    )


class BookingAccepted(_BookingRef):
    worker_id: str = Field(alias="workerId", min_length=1)

    @field_validator("worker_id", mode="before")
    @classmethod
    def coerce_worker(cls, value: Any) -> Any:
        return coerce_ref(value)

    def as_delta(self, raw: Any) -> dict[str, Any]:
        """Booking update implied by the broadcast, keeping any booking fields it carried."""
        fields = dict(raw) if isinstance(raw, dict) else {}
        return {
            **fields,
            "_id": self.booking_id,
            "status": fields.get("status") or "accepted",
            "workerId": self.worker_id,
        }


class BookingCancelled(_BookingRef):
    message: Optional[str] = None
    reason: Optional[str] = None


class BookingRejected(_BookingRef):
    worker_id: Optional[str] = Field(default=None, alias="workerId")


class BookingDeleted(_BookingRef):
    pass


class LocationPing(_BookingRef):
    """One-way telemetry; no acknowledgement is expected."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    timestamp: float
    worker_id: Optional[str] = Field(default=None, alias="workerId")
    accuracy: Optional[float] = None


class NavigationBroadcast(_BookingRef):
    """Advisory navigation/work broadcast. Not authoritative state."""

    worker_id: Optional[str] = Field(default=None, alias="workerId")
    timestamp: Optional[str] = None
