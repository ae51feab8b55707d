"""
In-process stand-in for the booking backend.

Implements the same REST and channel contracts as the real server closely
enough to drive the sessions offline: first accept wins, the loser gets
``400 Booking already accepted by another worker``, status updates follow
the lifecycle table, and every change is broadcast on per-actor channels.

Live sessions talk to the real service through ``BookingApiClient`` and
``EventChannel``. The console demo and the test suite use this module.
"""

import asyncio
import itertools
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from dispatch_sync.lifecycle.state_machine import (
    BookingLifecycle,
    InvalidTransitionError,
    LifecycleEvent,
)
from dispatch_sync.schemas.booking_schema import Booking, BookingStatus, Coordinate, Location
from dispatch_sync.schemas.event_schema import ADVISORY_EVENTS, ActorRole, ChannelEvent
from dispatch_sync.transport.channel import (
    ChannelHandle,
    ChannelState,
    EventName,
    HandlerRegistry,
    event_name,
)
from dispatch_sync.transport.rest_client import BookingApiError, RaceLostError

logger = logging.getLogger(__name__)

_STATUS_EVENTS: dict[BookingStatus, LifecycleEvent] = {
    BookingStatus.ARRIVED: LifecycleEvent.ARRIVE,
    BookingStatus.WORKING: LifecycleEvent.START_WORK,
    BookingStatus.COMPLETED: LifecycleEvent.COMPLETE,
    BookingStatus.CANCELLED: LifecycleEvent.CANCEL,
}


class LoopbackChannel(HandlerRegistry):
    """One actor's socket on a ``LoopbackBackend``."""

    def __init__(self, backend: "LoopbackBackend", actor_id: str, role: ActorRole) -> None:
        super().__init__()
        self._backend = backend
        self.actor_id = actor_id
        self.role = role
        self.missed: list[str] = []

    def start(self) -> ChannelHandle:
        self._set_state(ChannelState.CONNECTING)
        self._set_state(ChannelState.CONNECTED)
        return ChannelHandle(self._shutdown)

    def _shutdown(self) -> None:
        self._set_state(ChannelState.CLOSED)
        self._backend.detach(self)

    def drop(self) -> None:
        """Simulate a lost connection. Deliveries are missed until ``restore()``."""
        if self.connected:
            self._set_state(ChannelState.DISCONNECTED)

    def restore(self) -> None:
        if self._state == ChannelState.DISCONNECTED:
            self._set_state(ChannelState.CONNECTING)
            self._set_state(ChannelState.CONNECTED)

    async def emit(self, event: EventName, data: Any) -> bool:
        if not self.connected:
            return False
        await self._backend.route(self, event_name(event), data)
        return True

    async def deliver(self, event: str, data: Any) -> None:
        if not self.connected:
            self.missed.append(event)
            return
        await self.dispatch(event, data)


class LoopbackApi:
    """``BookingApi`` implementation backed by a ``LoopbackBackend``."""

    def __init__(self, backend: "LoopbackBackend") -> None:
        self._backend = backend

    async def fetch_bookings(self, actor_id: str, role: ActorRole) -> list[dict[str, Any]]:
        await self._backend.enter("fetch", actor_id)
        if role == ActorRole.USER:
            bookings = [b for b in self._backend.bookings() if b.requester_id == actor_id]
        else:
            bookings = [
                b for b in self._backend.bookings()
                if b.status == BookingStatus.PENDING or b.assigned_worker_id == actor_id
            ]
        return [b.to_wire() for b in bookings]

    async def get_booking(self, booking_id: str) -> Booking:
        await self._backend.enter("get", booking_id)
        return self._backend.require(booking_id)

    async def accept_booking(self, booking_id: str, worker_id: str) -> Booking:
        await self._backend.enter("accept", booking_id)
        return await self._backend.accept(booking_id, worker_id)

    async def reject_booking(self, booking_id: str, worker_id: str) -> Optional[Booking]:
        await self._backend.enter("reject", booking_id)
        await self._backend.reject(booking_id, worker_id)
        return None

    async def update_status(self, booking_id: str, status: BookingStatus, **fields: Any) -> Booking:
        await self._backend.enter("status", booking_id)
        return await self._backend.update_status(booking_id, status, **fields)

    async def close(self) -> None:
        return None


class LoopbackBackend:
    """Authoritative booking state plus per-actor event routing."""

    def __init__(self) -> None:
        self._bookings: dict[str, Booking] = {}
        self._channels: dict[tuple[ActorRole, str], list[LoopbackChannel]] = defaultdict(list)
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._ids = itertools.count(1)
        self.rejections: dict[str, set[str]] = defaultdict(set)
        self.requests: list[tuple[str, str]] = []
        self.api = LoopbackApi(self)

    # ------------------------------------------------------------------ #
    # Wiring
    # ------------------------------------------------------------------ #

    def channel(self, actor_id: str, role: ActorRole) -> LoopbackChannel:
        ch = LoopbackChannel(self, actor_id, role)
        self._channels[(role, actor_id)].append(ch)
        return ch

    def detach(self, channel: LoopbackChannel) -> None:
        channels = self._channels.get((channel.role, channel.actor_id), [])
        if channel in channels:
            channels.remove(channel)

    def fail_next(self, operation: str, error: Exception) -> None:
        """Make the next ``operation`` call (fetch/get/accept/reject/status) raise."""
        self._failures[operation].append(error)

    async def enter(self, operation: str, ref: str) -> None:
        self.requests.append((operation, ref))
        # Yield so concurrent callers interleave the way real requests do.
        await asyncio.sleep(0)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    def bookings(self) -> list[Booking]:
        return list(self._bookings.values())

    def get(self, booking_id: str) -> Optional[Booking]:
        return self._bookings.get(booking_id)

    def require(self, booking_id: str) -> Booking:
        booking = self._bookings.get(booking_id)
        if booking is None:
            raise BookingApiError("Booking not found", status=404)
        return booking

    def _store(self, booking: Booking, **changes: Any) -> Booking:
        updated = Booking.model_validate({**booking.to_wire(), **changes})
        self._bookings[updated.id] = updated
        return updated

    async def create_booking(
        self,
        requester_id: str,
        service_category: str,
        service_name: str = "",
        address: str = "",
        coordinate: Optional[Coordinate] = None,
        price: float = 0.0,
        description: str = "",
        booking_id: Optional[str] = None,
    ) -> Booking:
        """Create a pending booking and offer it to every connected worker."""
        booking = Booking(
            id=booking_id or f"bk-{next(self._ids)}",
            requester_id=requester_id,
            service_category=service_category,
            service_name=service_name or service_category,
            description=description,
            location=Location(address=address, coordinates=coordinate),
            price=price,
            created_at=datetime.now(timezone.utc),
        )
        self._bookings[booking.id] = booking
        logger.info("Created booking %s (%s) for %s", booking.id, service_category, requester_id)
        # The server pre-filters by category; workers re-check locally anyway.
        await self._to_workers(ChannelEvent.BOOKING_REQUEST, booking.to_wire())
        return booking

    async def accept(self, booking_id: str, worker_id: str) -> Booking:
        booking = self.require(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise BookingApiError("Booking has been cancelled", status=400)
        if booking.status != BookingStatus.PENDING:
            raise RaceLostError(
                "Booking already accepted by another worker",
                status=400,
                winner_id=booking.assigned_worker_id,
            )
        booking = self._store(booking, status=BookingStatus.ACCEPTED.value, workerId=worker_id)
        logger.info("Booking %s accepted by %s", booking_id, worker_id)
        payload = {"bookingId": booking.id, **booking.to_wire()}
        await self._to_workers(ChannelEvent.BOOKING_ACCEPTED, payload)
        await self._to_user(booking, ChannelEvent.BOOKING_ACCEPTED, payload)
        return booking

    async def reject(self, booking_id: str, worker_id: str) -> None:
        booking = self.require(booking_id)
        if booking.status != BookingStatus.PENDING:
            raise BookingApiError("Booking is no longer pending", status=400)
        self.rejections[booking_id].add(worker_id)
        await self._to_user(
            booking, ChannelEvent.BOOKING_REJECTED, {"bookingId": booking_id, "workerId": worker_id}
        )

    async def update_status(self, booking_id: str, status: BookingStatus, **fields: Any) -> Booking:
        booking = self.require(booking_id)
        event = _STATUS_EVENTS.get(status)
        if event is None:
            raise BookingApiError(f"Invalid status '{status.value}'", status=400)
        try:
            BookingLifecycle(booking.status).transition(event)
        except InvalidTransitionError as exc:
            raise BookingApiError(str(exc), status=400) from exc
        booking = self._store(booking, status=status.value, **fields)
        await self._broadcast_update(booking)
        if status == BookingStatus.CANCELLED:
            await self._to_workers(
                ChannelEvent.BOOKING_CANCELLED,
                {"bookingId": booking_id, "message": "Booking was cancelled by the customer",
                 "reason": booking.cancellation_reason},
            )
        return booking

    async def cancel_booking(self, booking_id: str, reason: Optional[str] = None) -> Booking:
        """Requester-side cancellation."""
        fields = {"cancellationReason": reason} if reason else {}
        return await self.update_status(booking_id, BookingStatus.CANCELLED, **fields)

    async def delete_booking(self, booking_id: str) -> None:
        booking = self._bookings.pop(booking_id, None)
        if booking is None:
            return
        await self._to_workers(ChannelEvent.BOOKING_DELETED, {"bookingId": booking_id})
        await self._to_user(booking, ChannelEvent.BOOKING_DELETED, {"bookingId": booking_id})

    # ------------------------------------------------------------------ #
    # Routing
    # ------------------------------------------------------------------ #

    async def route(self, sender: LoopbackChannel, event: str, data: Any) -> None:
        """Forward a client-emitted frame to whoever should see it."""
        if event == ChannelEvent.AUTHENTICATE.value:
            return
        booking_id = data.get("bookingId") if isinstance(data, dict) else None
        booking = self._bookings.get(booking_id) if booking_id else None
        if booking is None:
            logger.debug("Dropping %s from %s: unknown booking", event, sender.actor_id)
            return

        if event == ChannelEvent.USER_LOCATION.value:
            if booking.assigned_worker_id:
                await self._deliver((ActorRole.WORKER, booking.assigned_worker_id), event, data)
        elif event == ChannelEvent.WORKER_LOCATION.value or event in {e.value for e in ADVISORY_EVENTS}:
            await self._deliver((ActorRole.USER, booking.requester_id or ""), event, data)
        else:
            logger.debug("Ignoring client event %s", event)

    async def _broadcast_update(self, booking: Booking) -> None:
        payload = booking.to_wire()
        await self._to_user(booking, ChannelEvent.BOOKING_UPDATED, payload)
        if booking.assigned_worker_id:
            await self._deliver(
                (ActorRole.WORKER, booking.assigned_worker_id),
                ChannelEvent.BOOKING_UPDATED.value, payload,
            )

    async def _to_workers(self, event: ChannelEvent, data: dict[str, Any]) -> None:
        for key in [k for k in self._channels if k[0] == ActorRole.WORKER]:
            await self._deliver(key, event.value, data)

    async def _to_user(self, booking: Booking, event: ChannelEvent, data: dict[str, Any]) -> None:
        if booking.requester_id:
            await self._deliver((ActorRole.USER, booking.requester_id), event.value, data)

    async def _deliver(self, key: tuple[ActorRole, str], event: str, data: Any) -> None:
        for ch in list(self._channels.get(key, [])):
            await ch.deliver(event, dict(data) if isinstance(data, dict) else data)
