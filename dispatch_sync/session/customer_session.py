"""
Customer session: the requester's view of their bookings.

Merges the same booking events as the worker side into its own store, and
keeps a small tracking view per booking from the assigned worker's
location pings and advisory navigation broadcasts.
"""

import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Optional

from pydantic import ValidationError

from dispatch_sync.config import AppConfig, settings
from dispatch_sync.dispatch.errors import BookingActionError, JobUnavailableError
from dispatch_sync.dispatch.store import ReconciliationStore
from dispatch_sync.lifecycle.navigation import estimate_eta_minutes
from dispatch_sync.lifecycle.state_machine import TerminalStateError, is_absorbing
from dispatch_sync.logging_context import get_session_logger, set_session_id
from dispatch_sync.schemas.booking_schema import Booking, BookingStatus, Coordinate
from dispatch_sync.schemas.event_schema import (
    ADVISORY_EVENTS,
    ActorRole,
    BookingAccepted,
    BookingCancelled,
    BookingDeleted,
    BookingRejected,
    ChannelEvent,
    LocationPing,
    NavigationBroadcast,
)
from dispatch_sync.session.refresh import RefreshScheduler
from dispatch_sync.transport.channel import Channel, ChannelHandle, ChannelState
from dispatch_sync.transport.rest_client import BookingApi, BookingApiError
from dispatch_sync.utils import haversine_km

logger = get_session_logger(__name__)


@dataclass
class TrackingView:
    """What the requester sees while a worker is on the way or on site."""

    booking_id: str
    worker_id: Optional[str] = None
    worker_coordinate: Optional[Coordinate] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    last_advisory: Optional[ChannelEvent] = None
    rejected_by: set[str] = field(default_factory=set)


class CustomerSession:
    def __init__(
        self,
        user_id: str,
        api: BookingApi,
        channel: Channel,
        config: Optional[AppConfig] = None,
    ) -> None:
        self.user_id = user_id
        self._api = api
        self._channel = channel
        self._config = config or settings
        self.store = ReconciliationStore()
        self.tracking: dict[str, TrackingView] = {}
        self._refresh = RefreshScheduler(
            self.refresh,
            debounce_sec=self._config.sync.refetch_debounce_sec,
            poll_interval_sec=self._config.sync.poll_interval_sec,
        )
        self._channel_handle: Optional[ChannelHandle] = None
        self._was_disconnected = False
        self._started = False
        self._closed = False

    @property
    def session_label(self) -> str:
        return f"user:{self.user_id}"

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        set_session_id(self.session_label)
        self._channel.on(ChannelEvent.BOOKING_ACCEPTED, self._on_booking_accepted)
        self._channel.on(ChannelEvent.BOOKING_UPDATED, self._on_booking_updated)
        self._channel.on(ChannelEvent.BOOKING_CANCELLED, self._on_booking_cancelled)
        self._channel.on(ChannelEvent.BOOKING_REJECTED, self._on_booking_rejected)
        self._channel.on(ChannelEvent.BOOKING_DELETED, self._on_booking_deleted)
        self._channel.on(ChannelEvent.WORKER_LOCATION, self._on_worker_location)
        for event in ADVISORY_EVENTS:
            self._channel.on(event, partial(self._on_advisory, event))
        self._channel.on_state(self._on_channel_state)

        self._channel_handle = self._channel.start()
        await self._refresh.refresh_now("startup")
        self._refresh.start_polling()
        logger.info("Customer session started with %d bookings", len(self.store))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._refresh.stop()
        if self._channel_handle is not None:
            self._channel_handle.stop()
        logger.info("Customer session closed")

    async def refresh(self) -> None:
        records = await self._api.fetch_bookings(self.user_id, ActorRole.USER)
        self.store.apply_snapshot(records)

    def request_refresh(self, reason: str = "requested") -> bool:
        return self._refresh.request(reason)

    def bookings(self) -> list[Booking]:
        return self.store.all()

    def track(self, booking_id: str) -> TrackingView:
        view = self.tracking.get(booking_id)
        if view is None:
            view = self.tracking[booking_id] = TrackingView(booking_id)
        return view

    # ------------------------------------------------------------------ #
    # Actions
    # ------------------------------------------------------------------ #

    async def share_location(self, booking_id: str, coordinate: Coordinate) -> bool:
        """Send the requester's position to the assigned worker."""
        booking = self.store.get(booking_id)
        if booking is None or booking.assigned_worker_id is None or is_absorbing(booking.status):
            return False
        ping = LocationPing(
            booking_id=booking_id,
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
            timestamp=time.time(),
        )
        return await self._channel.emit(
            ChannelEvent.USER_LOCATION, ping.model_dump(by_alias=True, exclude_none=True)
        )

    async def cancel(self, booking_id: str, reason: Optional[str] = None) -> Booking:
        """Cancel a booking; the status flips locally until the server answers."""
        if self.store.get(booking_id) is None:
            raise JobUnavailableError(f"Unknown booking {booking_id}", booking_id)
        try:
            token = self.store.apply_optimistic(
                booking_id, {"status": BookingStatus.CANCELLED, "cancellation_reason": reason}
            )
        except TerminalStateError as exc:
            raise JobUnavailableError(str(exc), booking_id) from exc

        fields = {"cancellationReason": reason} if reason else {}
        try:
            booking = await self._api.update_status(booking_id, BookingStatus.CANCELLED, **fields)
        except BookingApiError as exc:
            self.store.rollback(token)
            raise BookingActionError(
                f"Could not cancel {booking_id}: {exc}", booking_id, retryable=exc.retryable
            ) from exc
        self.store.confirm(booking)
        return self.store.get(booking_id) or booking

    # ------------------------------------------------------------------ #
    # Channel handlers
    # ------------------------------------------------------------------ #

    def _on_booking_accepted(self, data: Any) -> None:
        try:
            event = BookingAccepted.model_validate(data)
        except ValidationError:
            logger.warning("Discarding malformed booking:accepted")
            return
        result = self.store.apply_delta(event.as_delta(data))
        if result.applied:
            self.track(event.booking_id).worker_id = event.worker_id

    def _on_booking_updated(self, data: Any) -> None:
        if isinstance(data, dict) and "booking" in data:
            data = data["booking"]
        self.store.apply_delta(data)

    def _on_booking_cancelled(self, data: Any) -> None:
        try:
            event = BookingCancelled.model_validate(data)
        except ValidationError:
            logger.warning("Discarding malformed booking:cancelled")
            return
        if event.booking_id in self.store:
            self.store.apply_delta({"_id": event.booking_id, "status": BookingStatus.CANCELLED.value})

    def _on_booking_rejected(self, data: Any) -> None:
        try:
            event = BookingRejected.model_validate(data)
        except ValidationError:
            return
        if event.worker_id:
            self.track(event.booking_id).rejected_by.add(event.worker_id)
        logger.info("Booking %s declined by a worker", event.booking_id)

    def _on_booking_deleted(self, data: Any) -> None:
        try:
            event = BookingDeleted.model_validate(data)
        except ValidationError:
            return
        self.store.remove(event.booking_id)
        self.tracking.pop(event.booking_id, None)

    def _on_worker_location(self, data: Any) -> None:
        try:
            ping = LocationPing.model_validate(data)
        except ValidationError:
            logger.debug("Ignoring malformed worker:location")
            return
        booking = self.store.get(ping.booking_id)
        if booking is None or is_absorbing(booking.status):
            return
        view = self.track(ping.booking_id)
        view.worker_id = ping.worker_id or view.worker_id
        view.worker_coordinate = Coordinate(latitude=ping.latitude, longitude=ping.longitude)
        target = booking.location.coordinates
        if target is not None:
            view.distance_km = haversine_km(
                ping.latitude, ping.longitude, target.latitude, target.longitude
            )
            view.eta_minutes = estimate_eta_minutes(
                view.distance_km, self._config.navigation.eta_speed_kmh
            )

    def _on_advisory(self, event: ChannelEvent, data: Any) -> None:
        try:
            broadcast = NavigationBroadcast.model_validate(data)
        except ValidationError:
            return
        if broadcast.booking_id not in self.store:
            return
        view = self.track(broadcast.booking_id)
        view.last_advisory = event
        if broadcast.worker_id:
            view.worker_id = broadcast.worker_id
        # Advisory only; the status itself arrives via booking:updated or a refresh.
        self._refresh.request(event.value)

    def _on_channel_state(self, state: ChannelState) -> None:
        if state == ChannelState.DISCONNECTED:
            self._was_disconnected = True
        elif state == ChannelState.CONNECTED and self._was_disconnected:
            self._was_disconnected = False
            self._refresh.request("reconnect")
