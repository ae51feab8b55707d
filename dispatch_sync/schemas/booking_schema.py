"""Booking data models as exchanged with the backend."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class BookingStatus(str, Enum):
    """Server-side booking status vocabulary."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    ARRIVED = "arrived"
    WORKING = "working"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


# Statuses that require an assigned worker.
ASSIGNED_STATUSES: frozenset[BookingStatus] = frozenset({
    BookingStatus.ACCEPTED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.ARRIVED,
    BookingStatus.WORKING,
    BookingStatus.COMPLETED,
})


def coerce_ref(value: Any) -> Any:
    """Reduce a populated reference (``{"_id": ..., "name": ...}``) to its id."""
    if isinstance(value, dict):
        return value.get("_id") or value.get("id")
    if value == "":
        return None
    return value


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat timestamps sent without an offset as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Coordinate(BaseModel):
    """A WGS84 point."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class Location(BaseModel):
    """Service address with an optional geographic point."""

    address: str = ""
    coordinates: Optional[Coordinate] = None


class _BookingFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(
        validation_alias=AliasChoices("_id", "id", "bookingId"),
        serialization_alias="_id",
        min_length=1,
    )

    @field_validator("id", mode="before")
    @classmethod
    def id_to_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class Booking(_BookingFields):
    """A single service request, in the backend's wire format."""

    requester_id: Optional[str] = Field(default=None, alias="userId")
    service_category: str = Field(default="", alias="serviceCategory")
    service_name: str = Field(default="", alias="serviceName")
    description: str = ""
    location: Location = Field(default_factory=Location)
    price: float = Field(default=0.0, ge=0)
    status: BookingStatus = BookingStatus.PENDING
    assigned_worker_id: Optional[str] = Field(default=None, alias="workerId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledDate")
    work_started_at: Optional[datetime] = Field(default=None, alias="workStartTime")
    work_duration_min: Optional[int] = Field(default=None, alias="actualDuration")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    cancellation_reason: Optional[str] = Field(default=None, alias="cancellationReason")

    @field_validator("requester_id", "assigned_worker_id", mode="before")
    @classmethod
    def coerce_refs(cls, value: Any) -> Any:
        return coerce_ref(value)

    @field_validator("created_at", "scheduled_at", "work_started_at")
    @classmethod
    def timestamps_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def check_assignment(self) -> "Booking":
        if self.status == BookingStatus.PENDING and self.assigned_worker_id is not None:
            raise ValueError(
                f"booking {self.id} is pending but assigned to {self.assigned_worker_id}"
            )
        if self.status in ASSIGNED_STATUSES and self.assigned_worker_id is None:
            raise ValueError(
                f"booking {self.id} is {self.status.value} without an assigned worker"
            )
        return self

    def to_wire(self) -> dict[str, Any]:
        """Serialize with backend field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class BookingPatch(_BookingFields):
    """A partial booking update: only the fields that were actually sent are set."""

    requester_id: Optional[str] = Field(default=None, alias="userId")
    service_category: Optional[str] = Field(default=None, alias="serviceCategory")
    service_name: Optional[str] = Field(default=None, alias="serviceName")
    description: Optional[str] = None
    location: Optional[Location] = None
    price: Optional[float] = Field(default=None, ge=0)
    status: Optional[BookingStatus] = None
    assigned_worker_id: Optional[str] = Field(default=None, alias="workerId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledDate")
    work_started_at: Optional[datetime] = Field(default=None, alias="workStartTime")
    work_duration_min: Optional[int] = Field(default=None, alias="actualDuration")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    cancellation_reason: Optional[str] = Field(default=None, alias="cancellationReason")

    @field_validator("requester_id", "assigned_worker_id", mode="before")
    @classmethod
    def coerce_refs(cls, value: Any) -> Any:
        return coerce_ref(value)

    @field_validator("created_at", "scheduled_at", "work_started_at")
    @classmethod
    def timestamps_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def changes(self) -> dict[str, Any]:
        """Fields present in the payload, keyed by attribute name."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "id"
        }
