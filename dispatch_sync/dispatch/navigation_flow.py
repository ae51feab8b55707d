"""
Navigation sub-flow for one accepted booking.

Drives the worker from acceptance to completion:

    start_navigation -> arrive -> start_work -> complete

``start_navigation`` is local and starts streaming ``worker:location``.
The other steps move the local phase first, PATCH the server status, and
revert the phase and the store overlay if the call fails. A flow ends
either completed or discarded (requester cancelled, worker left the job).
"""

import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from dispatch_sync.config import NavigationConfig, settings
from dispatch_sync.dispatch.errors import BookingActionError
from dispatch_sync.dispatch.sampler import LocationSample, LocationSampler, LocationSource, SamplerHandle
from dispatch_sync.dispatch.store import ReconciliationStore
from dispatch_sync.lifecycle.navigation import (
    NavigationPhase,
    NavigationState,
    NavigationTrigger,
    next_phase,
)
from dispatch_sync.lifecycle.state_machine import TerminalStateError
from dispatch_sync.schemas.booking_schema import Booking, BookingStatus, Coordinate
from dispatch_sync.schemas.event_schema import ChannelEvent, LocationPing
from dispatch_sync.transport.channel import Channel
from dispatch_sync.transport.rest_client import BookingApi, BookingApiError

logger = logging.getLogger(__name__)

Confirmation = Callable[[], Union[bool, Awaitable[bool]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NavigationFlow:
    """Worker-side orchestration of one job from accepted to completed."""

    def __init__(
        self,
        booking_id: str,
        worker_id: str,
        api: BookingApi,
        channel: Channel,
        store: ReconciliationStore,
        config: Optional[NavigationConfig] = None,
        location_source: Optional[LocationSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
        initial_phase: NavigationPhase = NavigationPhase.IDLE,
    ) -> None:
        self._worker_id = worker_id
        self._api = api
        self._channel = channel
        self._store = store
        self._config = config or settings.navigation
        self._location_source = location_source
        self._clock = clock or _utcnow
        self._sampler: Optional[LocationSampler] = None
        self._sampler_handle: Optional[SamplerHandle] = None
        self._closed = False

        self.state = NavigationState(booking_id=booking_id, phase=initial_phase, clock=self._clock)
        booking = store.get(booking_id)
        if booking is not None:
            self.state.customer_coordinate = booking.location.coordinates
            if booking.work_started_at is not None:
                self.state.work_started_at = booking.work_started_at

    @property
    def booking_id(self) -> str:
        return self.state.booking_id

    @property
    def phase(self) -> NavigationPhase:
        return self.state.phase

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sampling(self) -> bool:
        return self._sampler_handle is not None and self._sampler_handle.active

    @property
    def samples_sent(self) -> int:
        return self._sampler.samples_sent if self._sampler else 0

    # ------------------------------------------------------------------ #
    # Steps
    # ------------------------------------------------------------------ #

    async def start_navigation(self) -> None:
        """idle -> navigating. Local only; starts location sharing."""
        self._ensure_open()
        self.state.advance(NavigationTrigger.START_NAVIGATION)
        self._start_sampler()
        logger.info("Navigation to %s started", self.booking_id)
        await self._advise(ChannelEvent.NAVIGATION_STARTED)

    async def arrive(self) -> Booking:
        """navigating -> arrived."""
        booking = await self._step(NavigationTrigger.ARRIVE, BookingStatus.ARRIVED)
        self._stop_sampler()
        await self._advise(ChannelEvent.NAVIGATION_ARRIVED)
        return booking

    async def start_work(self) -> Booking:
        """arrived -> working. Starts the work clock."""
        started = self._clock()
        previous_start = self.state.work_started_at
        self.state.work_started_at = started
        try:
            booking = await self._step(
                NavigationTrigger.START_WORK,
                BookingStatus.WORKING,
                patch={"work_started_at": started},
                fields={"workStartTime": started.isoformat()},
            )
        except Exception:
            self.state.work_started_at = previous_start
            raise
        await self._advise(ChannelEvent.WORK_STARTED)
        return booking

    async def complete(
        self,
        confirm: Confirmation,
        payment_method: Optional[str] = None,
    ) -> Optional[Booking]:
        """
        working -> completed, after the worker confirms.

        Returns None (and stays in ``working``) if the confirmation is
        declined.
        """
        self._ensure_open()
        next_phase(self.state.phase, NavigationTrigger.COMPLETE_WORK)

        answer = confirm()
        if inspect.isawaitable(answer):
            answer = await answer
        if not answer:
            logger.info("Completion of %s not confirmed", self.booking_id)
            return None

        minutes = round(self.state.elapsed_work_seconds / 60)
        patch: dict[str, Any] = {"work_duration_min": minutes}
        fields: dict[str, Any] = {"actualDuration": minutes}
        if payment_method:
            patch["payment_method"] = payment_method
            fields["paymentMethod"] = payment_method

        booking = await self._step(
            NavigationTrigger.COMPLETE_WORK, BookingStatus.COMPLETED, patch=patch, fields=fields
        )
        self._stop_sampler()
        await self._advise(ChannelEvent.WORK_COMPLETED, actualDuration=minutes)
        logger.info("Job %s completed after %d min", self.booking_id, minutes)
        return booking

    async def _step(
        self,
        trigger: NavigationTrigger,
        status: BookingStatus,
        patch: Optional[dict[str, Any]] = None,
        fields: Optional[dict[str, Any]] = None,
    ) -> Booking:
        self._ensure_open()
        previous = self.state.phase
        self.state.advance(trigger)

        try:
            token = self._store.apply_optimistic(self.booking_id, {"status": status, **(patch or {})})
        except (KeyError, TerminalStateError, ValueError) as exc:
            self.state.phase = previous
            raise BookingActionError(
                f"Cannot mark {self.booking_id} {status.value}: {exc}", self.booking_id
            ) from exc

        try:
            booking = await self._api.update_status(self.booking_id, status, **(fields or {}))
        except BookingApiError as exc:
            self._store.rollback(token)
            if not self._closed:
                self.state.phase = previous
            logger.warning("Marking %s %s failed: %s", self.booking_id, status.value, exc)
            raise BookingActionError(
                f"Could not mark {self.booking_id} {status.value}: {exc}",
                self.booking_id,
                retryable=exc.retryable,
            ) from exc

        self._store.confirm(booking)
        if self.state.phase == NavigationPhase.DISCARDED:
            logger.info(
                "Flow for %s was discarded while %s was in flight", self.booking_id, status.value
            )
        return booking

    # ------------------------------------------------------------------ #
    # Location and ETA
    # ------------------------------------------------------------------ #

    def update_worker_coordinate(self, coordinate: Coordinate) -> None:
        self.state.worker_coordinate = coordinate
        self.state.refresh_estimate(self._config.eta_speed_kmh)

    def update_customer_coordinate(self, coordinate: Coordinate) -> None:
        self.state.customer_coordinate = coordinate
        self.state.refresh_estimate(self._config.eta_speed_kmh)

    def set_degraded(self, degraded: bool) -> None:
        """Freeze the displayed ETA while the channel is down."""
        if self.state.degraded == degraded:
            return
        self.state.degraded = degraded
        if not degraded:
            self.state.refresh_estimate(self._config.eta_speed_kmh)

    def _start_sampler(self) -> None:
        if self._location_source is None:
            logger.debug("No location source; %s will not share location", self.booking_id)
            return
        self._sampler = LocationSampler(
            self._location_source,
            self._forward_sample,
            interval_sec=self._config.location_interval_sec,
            distance_m=self._config.location_distance_m,
        )
        self._sampler_handle = self._sampler.start(name=f"sampler:{self.booking_id}")

    def _stop_sampler(self) -> None:
        if self._sampler_handle is not None and self._sampler_handle.stop():
            logger.debug("Location sharing for %s stopped", self.booking_id)

    async def _forward_sample(self, sample: LocationSample) -> None:
        self.update_worker_coordinate(sample.coordinate)
        ping = LocationPing(
            booking_id=self.booking_id,
            latitude=sample.coordinate.latitude,
            longitude=sample.coordinate.longitude,
            timestamp=sample.timestamp,
            worker_id=self._worker_id,
        )
        await self._channel.emit(
            ChannelEvent.WORKER_LOCATION, ping.model_dump(by_alias=True, exclude_none=True)
        )

    async def _advise(self, event: ChannelEvent, **extra: Any) -> None:
        payload = {
            "bookingId": self.booking_id,
            "workerId": self._worker_id,
            "timestamp": self._clock().isoformat(),
            **extra,
        }
        if not await self._channel.emit(event, payload):
            logger.debug("Advisory %s for %s not sent", event.value, self.booking_id)

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #

    def cancel(self) -> bool:
        """The requester cancelled: stop sampling and discard the state."""
        return self._discard("cancelled by requester")

    def close(self) -> bool:
        """The worker left the job screen or the session is ending."""
        return self._discard("closed")

    def _discard(self, why: str) -> bool:
        if self._closed:
            return False
        self._closed = True
        self._stop_sampler()
        if not self.state.is_final:
            self.state.advance(NavigationTrigger.DISCARD)
        logger.info("Navigation for %s %s", self.booking_id, why)
        return True

    def _ensure_open(self) -> None:
        if self._closed or self.state.is_final:
            raise BookingActionError(
                f"Navigation for {self.booking_id} is already {self.state.phase.value}",
                self.booking_id,
            )
