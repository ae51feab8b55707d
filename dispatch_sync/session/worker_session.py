"""
Worker session: everything one worker's client does with bookings.

Data flow:
    booking:request -> eligibility re-check -> store insert + alert
    accept/reject   -> optimistic overlay -> REST -> confirm or roll back
    booking:accepted / booking:updated / booking:cancelled -> store merge
    store change    -> stop stale alerts, start/cancel navigation flows

The session owns every background resource it starts (channel, alert,
samplers, polling) and ``close()`` stops all of them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from dispatch_sync.config import AppConfig, settings
from dispatch_sync.dispatch.alerts import AlertSink, AlertStopReason, AlertTimer
from dispatch_sync.dispatch.eligibility import check_eligibility, is_eligible
from dispatch_sync.dispatch.errors import BookingActionError, JobUnavailableError
from dispatch_sync.dispatch.navigation_flow import NavigationFlow
from dispatch_sync.dispatch.sampler import LocationSource
from dispatch_sync.dispatch.store import (
    ChangeKind,
    OptimisticConflictError,
    ReconciliationStore,
    StoreChange,
)
from dispatch_sync.lifecycle.navigation import phase_for_status
from dispatch_sync.lifecycle.state_machine import TerminalStateError, is_absorbing
from dispatch_sync.logging_context import get_session_logger, set_session_id
from dispatch_sync.schemas.booking_schema import Booking, BookingStatus, Coordinate
from dispatch_sync.schemas.event_schema import (
    ActorRole,
    BookingAccepted,
    BookingCancelled,
    BookingDeleted,
    ChannelEvent,
    LocationPing,
)
from dispatch_sync.schemas.worker_schema import WorkerProfile
from dispatch_sync.session.refresh import RefreshScheduler
from dispatch_sync.transport.channel import Channel, ChannelHandle, ChannelState
from dispatch_sync.transport.rest_client import BookingApi, BookingApiError, RaceLostError

logger = get_session_logger(__name__)


class NoticeKind(str, Enum):
    RACE_LOST = "race_lost"
    CANCELLED = "cancelled"
    REMOVED = "removed"
    REASSIGNED = "reassigned"
    ENDED = "ended"


@dataclass(frozen=True)
class SessionNotice:
    """Something the worker should be told about (toast, dialog)."""
    kind: NoticeKind
    booking_id: str
    message: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WorkerSession:
    def __init__(
        self,
        profile: WorkerProfile,
        api: BookingApi,
        channel: Channel,
        config: Optional[AppConfig] = None,
        alert_sink: Optional[AlertSink] = None,
        location_source: Optional[LocationSource] = None,
        flow_clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.profile = profile
        self._api = api
        self._channel = channel
        self._config = config or settings
        self._location_source = location_source
        self._flow_clock = flow_clock

        self.store = ReconciliationStore(worker_id=profile.id)
        self.alerts = AlertTimer(alert_sink, self._config.alerts, still_pending=self._still_offered)
        self._refresh = RefreshScheduler(
            self.refresh,
            debounce_sec=self._config.sync.refetch_debounce_sec,
            poll_interval_sec=self._config.sync.poll_interval_sec,
        )
        self._flows: dict[str, NavigationFlow] = {}
        self.notices: list[SessionNotice] = []
        self._channel_handle: Optional[ChannelHandle] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._was_disconnected = False
        self._started = False
        self._closed = False

    @property
    def worker_id(self) -> str:
        return self.profile.id

    @property
    def session_label(self) -> str:
        return f"worker:{self.profile.id}"

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        set_session_id(self.session_label)
        self._unsubscribe = self.store.subscribe(self._on_store_change)

        self._channel.on(ChannelEvent.BOOKING_REQUEST, self._on_booking_request)
        self._channel.on(ChannelEvent.BOOKING_ACCEPTED, self._on_booking_accepted)
        self._channel.on(ChannelEvent.BOOKING_UPDATED, self._on_booking_updated)
        self._channel.on(ChannelEvent.BOOKING_CANCELLED, self._on_booking_cancelled)
        self._channel.on(ChannelEvent.BOOKING_DELETED, self._on_booking_deleted)
        self._channel.on(ChannelEvent.USER_LOCATION, self._on_user_location)
        self._channel.on_state(self._on_channel_state)

        self._channel_handle = self._channel.start()
        await self._refresh.refresh_now("startup")
        self._refresh.start_polling()
        logger.info(
            "Worker session started (%d pending, %d active)",
            len(self.pending_requests()), len(self.active_jobs()),
        )

    def close(self) -> None:
        """Stop every owned resource. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.alerts.shutdown()
        for flow in self._flows.values():
            flow.close()
        self._refresh.stop()
        if self._channel_handle is not None:
            self._channel_handle.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
        logger.info("Worker session closed")

    # ------------------------------------------------------------------ #
    # Views
    # ------------------------------------------------------------------ #

    def pending_requests(self) -> list[Booking]:
        return self.store.pending_requests()

    def active_jobs(self) -> list[Booking]:
        return self.store.active_jobs(self.profile.id)

    def navigation(self, booking_id: str) -> Optional[NavigationFlow]:
        return self._flows.get(booking_id)

    # ------------------------------------------------------------------ #
    # REST snapshot
    # ------------------------------------------------------------------ #

    async def refresh(self) -> None:
        """Fetch this worker's bookings and merge them into the store."""
        records = await self._api.fetch_bookings(self.profile.id, ActorRole.WORKER)
        relevant: list[Booking] = []
        for raw in records:
            try:
                booking = Booking.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed booking in snapshot: %d errors", exc.error_count())
                continue
            if (
                booking.id in self.store
                or booking.assigned_worker_id == self.profile.id
                or is_eligible(booking, self.profile)
            ):
                relevant.append(booking)
        self.store.apply_snapshot(relevant)

    def request_refresh(self, reason: str = "requested") -> bool:
        return self._refresh.request(reason)

    # ------------------------------------------------------------------ #
    # User actions
    # ------------------------------------------------------------------ #

    async def accept(self, booking_id: str) -> Booking:
        """
        Claim a pending booking.

        The card leaves the pending list immediately. Nothing is assumed
        until the backend confirms; a lost race or a failure restores the
        previous state.

        Raises:
            JobUnavailableError: Another worker won, or the booking is gone.
            BookingActionError: The request failed; ``retryable`` says
                whether trying again makes sense.
        """
        booking = self._require_open(booking_id)
        if self.store.has_optimistic(booking_id):
            raise BookingActionError(f"An action on {booking_id} is already in flight", booking_id)
        verdict = check_eligibility(booking, self.profile)
        if not verdict.eligible:
            raise JobUnavailableError(verdict.message or "Booking is not available", booking_id)

        self.alerts.stop_for(booking_id, AlertStopReason.ACCEPTED)
        try:
            token = self.store.apply_optimistic(
                booking_id,
                {"status": BookingStatus.ACCEPTED, "assigned_worker_id": self.profile.id},
            )
        except (TerminalStateError, OptimisticConflictError) as exc:
            raise JobUnavailableError(str(exc), booking_id) from exc

        try:
            confirmed = await self._api.accept_booking(booking_id, self.profile.id)
        except RaceLostError as exc:
            self.store.rollback(token)
            self.store.dismiss(booking_id)
            self._notice(NoticeKind.RACE_LOST, booking_id, "Job taken by another worker")
            self.alerts.resume()
            raise JobUnavailableError("Job taken by another worker", booking_id) from exc
        except BookingApiError as exc:
            self.store.rollback(token)
            self.alerts.resume()
            logger.warning("Accept of %s failed: %s", booking_id, exc)
            raise BookingActionError(
                f"Could not accept {booking_id}: {exc}", booking_id, retryable=exc.retryable
            ) from exc

        self.store.confirm(confirmed)
        view = self.store.get(booking_id)
        if view is None or is_absorbing(view.status) or view.assigned_worker_id != self.profile.id:
            # Cancelled or reassigned while the accept was in flight.
            if view is not None and view.status == BookingStatus.CANCELLED:
                self._notice(NoticeKind.CANCELLED, booking_id, "The customer cancelled this job")
            self.alerts.resume()
            raise JobUnavailableError(f"Booking {booking_id} is no longer available", booking_id)
        logger.info("Accepted booking %s", booking_id)
        return view

    async def reject(self, booking_id: str) -> None:
        """Decline a pending booking for this worker only."""
        self._require_open(booking_id)
        self.alerts.stop_for(booking_id, AlertStopReason.REJECTED)
        try:
            token = self.store.apply_optimistic(booking_id, {}, hidden=True)
        except TerminalStateError as exc:
            raise JobUnavailableError(str(exc), booking_id) from exc

        try:
            await self._api.reject_booking(booking_id, self.profile.id)
        except BookingApiError as exc:
            self.store.rollback(token)
            logger.warning("Reject of %s failed: %s", booking_id, exc)
            raise BookingActionError(
                f"Could not reject {booking_id}: {exc}", booking_id, retryable=exc.retryable
            ) from exc

        self.store.dismiss(booking_id)
        logger.info("Rejected booking %s", booking_id)

    def dismiss_alert(self) -> bool:
        """Silence the current alert; the request stays in the pending list."""
        return self.alerts.stop(AlertStopReason.DISMISSED)

    async def start_navigation(self, booking_id: str) -> NavigationFlow:
        flow = self._flows.get(booking_id)
        if flow is None:
            raise BookingActionError(f"No accepted job {booking_id} to navigate to", booking_id)
        await flow.start_navigation()
        return flow

    def _require_open(self, booking_id: str) -> Booking:
        if self._closed:
            raise BookingActionError("Session is closed", booking_id)
        booking = self.store.get(booking_id)
        if booking is None:
            raise JobUnavailableError(f"Unknown booking {booking_id}", booking_id)
        return booking

    # ------------------------------------------------------------------ #
    # Channel handlers
    # ------------------------------------------------------------------ #

    def _on_booking_request(self, data: Any) -> None:
        try:
            booking = Booking.model_validate(data)
        except ValidationError as exc:
            logger.warning("Discarding malformed booking:request: %d errors", exc.error_count())
            return
        if not is_eligible(booking, self.profile):
            return
        result = self.store.apply_delta(booking)
        if result.applied and result.booking is not None and self._still_offered(booking.id):
            self.alerts.enqueue(result.booking)

    def _on_booking_accepted(self, data: Any) -> None:
        try:
            event = BookingAccepted.model_validate(data)
        except ValidationError as exc:
            logger.warning("Discarding malformed booking:accepted: %d errors", exc.error_count())
            return
        if event.booking_id not in self.store and event.worker_id != self.profile.id:
            return
        self.store.apply_delta(event.as_delta(data))

    def _on_booking_updated(self, data: Any) -> None:
        if isinstance(data, dict) and "booking" in data:
            data = data["booking"]
        booking_id = None
        if isinstance(data, dict):
            booking_id = data.get("_id") or data.get("id") or data.get("bookingId")
        if booking_id is not None and str(booking_id) not in self.store:
            # Unknown id: insert it, unless it is an offer this worker can't take.
            try:
                booking = Booking.model_validate(data)
            except ValidationError as exc:
                logger.warning("Discarding malformed booking:updated: %d errors", exc.error_count())
                return
            if booking.status == BookingStatus.PENDING and not is_eligible(booking, self.profile):
                return
            self.store.apply_delta(booking)
            return
        self.store.apply_delta(data)

    def _on_booking_cancelled(self, data: Any) -> None:
        try:
            event = BookingCancelled.model_validate(data)
        except ValidationError as exc:
            logger.warning("Discarding malformed booking:cancelled: %d errors", exc.error_count())
            return
        if event.booking_id not in self.store:
            return
        delta: dict[str, Any] = {"_id": event.booking_id, "status": BookingStatus.CANCELLED.value}
        if event.reason or event.message:
            delta["cancellationReason"] = event.reason or event.message
        self.store.apply_delta(delta)

    def _on_booking_deleted(self, data: Any) -> None:
        try:
            event = BookingDeleted.model_validate(data)
        except ValidationError:
            logger.warning("Discarding malformed booking:deleted")
            return
        self.store.remove(event.booking_id)

    def _on_user_location(self, data: Any) -> None:
        try:
            ping = LocationPing.model_validate(data)
        except ValidationError:
            logger.debug("Ignoring malformed user:location")
            return
        flow = self._flows.get(ping.booking_id)
        if flow is not None and not flow.closed:
            flow.update_customer_coordinate(
                Coordinate(latitude=ping.latitude, longitude=ping.longitude)
            )

    def _on_channel_state(self, state: ChannelState) -> None:
        if state == ChannelState.DISCONNECTED:
            self._was_disconnected = True
            for flow in self._flows.values():
                flow.set_degraded(True)
        elif state == ChannelState.CONNECTED:
            for flow in self._flows.values():
                flow.set_degraded(False)
            if self._was_disconnected:
                self._was_disconnected = False
                self._refresh.request("reconnect")

    # ------------------------------------------------------------------ #
    # Store side effects
    # ------------------------------------------------------------------ #

    def _on_store_change(self, change: StoreChange) -> None:
        booking_id = change.booking_id

        if change.kind == ChangeKind.REMOVED:
            self.alerts.stop_for(booking_id, AlertStopReason.WITHDRAWN)
            if self._discard_flow(booking_id):
                self._notice(NoticeKind.REMOVED, booking_id, "Job was removed")
            return

        if change.kind == ChangeKind.RACE_LOST:
            self.alerts.stop_for(booking_id, AlertStopReason.WITHDRAWN)
            self._notice(NoticeKind.RACE_LOST, booking_id, "Job taken by another worker")
            return

        booking = change.booking
        if booking is None:
            return
        if booking.status != BookingStatus.PENDING:
            self.alerts.stop_for(booking_id, AlertStopReason.WITHDRAWN)

        if booking.status == BookingStatus.CANCELLED:
            if self._discard_flow(booking_id, cancelled=True):
                self._notice(NoticeKind.CANCELLED, booking_id, "The customer cancelled this job")
            return

        confirmed = self.store.get_confirmed(booking_id)
        flow = self._flows.get(booking_id)
        if flow is not None and confirmed is not None:
            if confirmed.assigned_worker_id != self.profile.id:
                self._discard_flow(booking_id)
                self._notice(NoticeKind.REASSIGNED, booking_id, "Job was reassigned")
                return
            if is_absorbing(confirmed.status):
                was_open = not flow.state.is_final
                self._discard_flow(booking_id, cancelled=confirmed.status == BookingStatus.REJECTED)
                if was_open:
                    self._notice(
                        NoticeKind.ENDED, booking_id, f"Job was marked {confirmed.status.value}"
                    )
                return

        if (
            confirmed is not None
            and confirmed.assigned_worker_id == self.profile.id
            and not is_absorbing(confirmed.status)
            and booking_id not in self._flows
            and not self._closed
        ):
            self._flows[booking_id] = NavigationFlow(
                booking_id,
                self.profile.id,
                self._api,
                self._channel,
                self.store,
                config=self._config.navigation,
                location_source=self._location_source,
                clock=self._flow_clock,
                initial_phase=phase_for_status(confirmed.status),
            )
            logger.info("Job %s assigned; navigation ready", booking_id)

    def _discard_flow(self, booking_id: str, cancelled: bool = False) -> bool:
        flow = self._flows.pop(booking_id, None)
        if flow is None:
            return False
        return flow.cancel() if cancelled else flow.close()

    def _still_offered(self, booking_id: str) -> bool:
        return any(b.id == booking_id for b in self.store.pending_requests())

    def _notice(self, kind: NoticeKind, booking_id: str, message: str) -> None:
        if any(n.kind == kind and n.booking_id == booking_id for n in self.notices):
            return
        self.notices.append(SessionNotice(kind, booking_id, message))
        logger.info("Notice for %s: %s", booking_id, message)
