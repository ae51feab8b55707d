"""
New-request alert: repeating beep, haptic pattern, and a dismissible banner.

An alert is an owned resource. ``AlertTimer.start()`` returns an
``AlertHandle`` whose ``stop()`` is synchronous and safe to call any number
of times. Only one alert runs per session; starting another stops the
current one first.

Presentation policy when several eligible requests arrive together: FIFO,
one banner at a time. ``enqueue()`` queues while an alert is showing and
surfaces the next still-pending request once the current alert ends.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Callable, Optional, Protocol

from dispatch_sync.config import AlertConfig, settings
from dispatch_sync.schemas.booking_schema import Booking

logger = logging.getLogger(__name__)


class AlertStopReason(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DISMISSED = "dismissed"
    TIMEOUT = "timeout"
    SUPERSEDED = "superseded"
    WITHDRAWN = "withdrawn"
    SHUTDOWN = "shutdown"


# Reasons after which the next queued request is surfaced.
_SURFACE_NEXT = frozenset({
    AlertStopReason.REJECTED,
    AlertStopReason.DISMISSED,
    AlertStopReason.TIMEOUT,
    AlertStopReason.WITHDRAWN,
})


class AlertSink(Protocol):
    """Output devices for an alert: speaker, vibration motor, banner."""

    def beep(self) -> None: ...

    def vibrate(self) -> None: ...

    def cancel_vibration(self) -> None: ...

    def show_banner(self, booking: Booking) -> None: ...

    def hide_banner(self, booking_id: str) -> None: ...


class LoggingAlertSink:
    """Headless sink that only logs. Used by the live entry point."""

    def beep(self) -> None:
        logger.debug("beep")

    def vibrate(self) -> None:
        logger.debug("vibrate")

    def cancel_vibration(self) -> None:
        logger.debug("vibration cancelled")

    def show_banner(self, booking: Booking) -> None:
        logger.info(
            "New request %s: %s (%s) at %s",
            booking.id, booking.service_name or booking.service_category,
            booking.service_category, booking.location.address or "unknown address",
        )

    def hide_banner(self, booking_id: str) -> None:
        logger.debug("Banner for %s hidden", booking_id)


class AlertHandle:
    """A running alert for one booking."""

    def __init__(
        self,
        booking: Booking,
        sink: AlertSink,
        config: AlertConfig,
        on_stopped: Optional[Callable[["AlertHandle", AlertStopReason], None]] = None,
    ) -> None:
        self.booking = booking
        self._sink = sink
        self._config = config
        self._on_stopped = on_stopped
        self._task: Optional[asyncio.Task] = None
        self._stop_reason: Optional[AlertStopReason] = None
        self.beeps = 0

    @property
    def booking_id(self) -> str:
        return self.booking.id

    @property
    def active(self) -> bool:
        return self._stop_reason is None

    @property
    def stop_reason(self) -> Optional[AlertStopReason]:
        return self._stop_reason

    def begin(self) -> None:
        self._sink.show_banner(self.booking)
        self._sink.vibrate()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"alert:{self.booking_id}"
        )

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout_sec
        while True:
            self._sink.beep()
            self.beeps += 1
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self._config.interval_sec, remaining))
            if loop.time() >= deadline:
                break
        self.stop(AlertStopReason.TIMEOUT)

    def stop(self, reason: AlertStopReason = AlertStopReason.DISMISSED) -> bool:
        """Stop sound, vibration, and banner. Returns False if already stopped."""
        if self._stop_reason is not None:
            return False
        self._stop_reason = reason
        task = self._task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        self._sink.cancel_vibration()
        self._sink.hide_banner(self.booking_id)
        logger.debug("Alert for %s stopped: %s", self.booking_id, reason.value)
        if self._on_stopped is not None:
            self._on_stopped(self, reason)
        return True


class AlertTimer:
    """Owns the session's single alert slot and its FIFO queue."""

    def __init__(
        self,
        sink: Optional[AlertSink] = None,
        config: Optional[AlertConfig] = None,
        still_pending: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._sink = sink or LoggingAlertSink()
        self._config = config or settings.alerts
        self._still_pending = still_pending or (lambda _booking_id: True)
        self._active: Optional[AlertHandle] = None
        self._queue: deque[Booking] = deque()

    @property
    def active(self) -> Optional[AlertHandle]:
        return self._active

    @property
    def queued_ids(self) -> list[str]:
        return [b.id for b in self._queue]

    def start(self, booking: Booking) -> AlertHandle:
        """Start alerting for ``booking``, stopping any alert already running."""
        if self._active is not None:
            self._active.stop(AlertStopReason.SUPERSEDED)
        handle = AlertHandle(booking, self._sink, self._config, on_stopped=self._handle_stopped)
        self._active = handle
        handle.begin()
        logger.info("Alerting for booking %s", booking.id)
        return handle

    def enqueue(self, booking: Booking) -> Optional[AlertHandle]:
        """Alert now if idle, otherwise queue. Returns the handle if started."""
        if self._active is None:
            return self.start(booking)
        if booking.id == self._active.booking_id or booking.id in self.queued_ids:
            return None
        self._queue.append(booking)
        logger.debug("Queued alert for %s (%d waiting)", booking.id, len(self._queue))
        return None

    def stop(self, reason: AlertStopReason = AlertStopReason.DISMISSED) -> bool:
        """Stop whatever alert is showing."""
        if self._active is None:
            return False
        return self._active.stop(reason)

    def stop_for(self, booking_id: str, reason: AlertStopReason) -> bool:
        """Stop the alert for one booking and drop it from the queue."""
        self._discard_queued(booking_id)
        if self._active is not None and self._active.booking_id == booking_id:
            return self._active.stop(reason)
        return False

    def shutdown(self) -> None:
        """Clear the queue and stop the active alert. Idempotent."""
        self._queue.clear()
        self.stop(AlertStopReason.SHUTDOWN)

    def _discard_queued(self, booking_id: str) -> None:
        self._queue = deque(b for b in self._queue if b.id != booking_id)

    def _handle_stopped(self, handle: AlertHandle, reason: AlertStopReason) -> None:
        if handle is not self._active:
            return
        self._active = None
        if reason in _SURFACE_NEXT:
            self.resume()

    def resume(self) -> Optional[AlertHandle]:
        """Surface the next queued request that is still pending, if idle."""
        if self._active is not None:
            return None
        while self._queue:
            nxt = self._queue.popleft()
            if self._still_pending(nxt.id):
                return self.start(nxt)
            logger.debug("Skipping queued alert for %s: no longer pending", nxt.id)
        return None
