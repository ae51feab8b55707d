"""
Booking REST client.

Thin aiohttp wrapper over the booking endpoints the core consumes: fetch
bookings for an actor, accept, reject, and patch status. Every transition
call is treated as failed unless the response carries a valid booking
(or, for reject, a 2xx); callers roll back their optimistic state on any
``BookingApiError``.

Endpoints
~~~~~~~~~
- ``GET   /api/bookings/worker/{id}`` / ``GET /api/bookings/user/{id}``
- ``GET   /api/bookings/{id}``
- ``PATCH /api/bookings/{id}/accept``  body ``{"workerId": ...}``
- ``PATCH /api/bookings/{id}/reject``  body ``{"workerId": ...}``
- ``PATCH /api/bookings/{id}/status``  body ``{"status": ..., ...}``
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

import aiohttp
from pydantic import ValidationError

from dispatch_sync.config import settings
from dispatch_sync.schemas.booking_schema import Booking, BookingStatus
from dispatch_sync.schemas.event_schema import ActorRole

logger = logging.getLogger(__name__)

# Backend wording for the losing side of the accept race.
_RACE_LOST_MARKERS = ("already accepted", "no longer available", "already assigned")


class BookingApiError(Exception):
    """A REST call did not succeed."""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class TransportError(BookingApiError):
    """Network failure or timeout; the request may be retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status=None, retryable=True)


class RaceLostError(BookingApiError):
    """Another worker's accept was confirmed first."""

    def __init__(self, message: str, status: Optional[int] = None, winner_id: Optional[str] = None) -> None:
        super().__init__(message, status=status, retryable=False)
        self.winner_id = winner_id


class BookingApi(Protocol):
    """The REST surface the sessions depend on."""

    async def fetch_bookings(self, actor_id: str, role: ActorRole) -> list[dict[str, Any]]: ...

    async def get_booking(self, booking_id: str) -> Booking: ...

    async def accept_booking(self, booking_id: str, worker_id: str) -> Booking: ...

    async def reject_booking(self, booking_id: str, worker_id: str) -> Optional[Booking]: ...

    async def update_status(
        self, booking_id: str, status: BookingStatus, **fields: Any
    ) -> Booking: ...

    async def close(self) -> None: ...


def _unwrap(body: Any, key: str) -> Any:
    if isinstance(body, dict) and key in body:
        return body[key]
    return body


def parse_booking(body: Any) -> Booking:
    """Extract a Booking from a response body, bare or ``{"booking": ...}``."""
    try:
        return Booking.model_validate(_unwrap(body, "booking"))
    except ValidationError as exc:
        raise BookingApiError(f"Malformed booking in response: {exc.error_count()} errors") from exc


def parse_booking_list(body: Any) -> list[dict[str, Any]]:
    """Extract raw booking records from a list response.

    Records are returned unvalidated; the store validates and discards
    malformed ones individually.
    """
    records = _unwrap(body, "bookings")
    if not isinstance(records, list):
        raise BookingApiError("Booking list response is not a list")
    return [r for r in records if isinstance(r, dict)]


class BookingApiClient:
    """aiohttp implementation of ``BookingApi``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_sec: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = (base_url or settings.backend.api_url).rstrip("/")
        self._timeout = aiohttp.ClientTimeout(
            total=timeout_sec or settings.backend.request_timeout_sec, connect=5
        )
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=aiohttp.TCPConnector(keepalive_timeout=30, limit=10),
            )
            self._owns_session = True
            logger.debug("HTTP session created for %s", self._base_url)
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            logger.debug("HTTP session closed")

    async def _request(self, method: str, path: str, json: Optional[dict[str, Any]] = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with self._get_session().request(method, url, json=json) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if status >= 400:
            message = ""
            if isinstance(body, dict):
                message = str(body.get("message") or body.get("error") or "")
            logger.info("%s %s -> %d %s", method, path, status, message)
            raise BookingApiError(
                message or f"{method} {path} returned {status}",
                status=status,
                retryable=status >= 500 or status == 429,
            )
        return body

    async def fetch_bookings(self, actor_id: str, role: ActorRole) -> list[dict[str, Any]]:
        body = await self._request("GET", f"/api/bookings/{role.value}/{actor_id}")
        return parse_booking_list(body)

    async def get_booking(self, booking_id: str) -> Booking:
        body = await self._request("GET", f"/api/bookings/{booking_id}")
        return parse_booking(body)

    async def accept_booking(self, booking_id: str, worker_id: str) -> Booking:
        """
        Claim a pending booking.

        Raises:
            RaceLostError: Another worker's claim was confirmed first.
            BookingApiError: Any other non-success outcome.
        """
        try:
            body = await self._request(
                "PATCH", f"/api/bookings/{booking_id}/accept", {"workerId": worker_id}
            )
        except BookingApiError as exc:
            if exc.status in (400, 409) and any(
                marker in str(exc).lower() for marker in _RACE_LOST_MARKERS
            ):
                raise RaceLostError(str(exc), status=exc.status) from exc
            raise

        booking = parse_booking(body)
        if booking.assigned_worker_id != worker_id:
            raise RaceLostError(
                f"Booking {booking_id} is assigned to {booking.assigned_worker_id}",
                winner_id=booking.assigned_worker_id,
            )
        return booking

    async def reject_booking(self, booking_id: str, worker_id: str) -> Optional[Booking]:
        body = await self._request(
            "PATCH", f"/api/bookings/{booking_id}/reject", {"workerId": worker_id}
        )
        if isinstance(body, dict) and "booking" in body:
            return parse_booking(body)
        return None

    async def update_status(self, booking_id: str, status: BookingStatus, **fields: Any) -> Booking:
        payload = {"status": status.value, **fields}
        body = await self._request("PATCH", f"/api/bookings/{booking_id}/status", payload)
        booking = parse_booking(body)
        return booking
