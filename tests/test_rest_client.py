"""Tests for the booking REST client (aiohttp mocked)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from dispatch_sync.schemas.booking_schema import BookingStatus
from dispatch_sync.schemas.event_schema import ActorRole
from dispatch_sync.transport.rest_client import (
    BookingApiClient,
    BookingApiError,
    RaceLostError,
    TransportError,
    parse_booking,
    parse_booking_list,
)
from tests.conftest import make_booking, wire

BASE = "http://api.test"


def _make_mock_response(status: int, json_data=None):
    resp = AsyncMock()
    resp.status = status
    resp.json = AsyncMock(return_value=json_data)
    return resp


def _make_mock_session(response=None, enter_error=None):
    """Create a mock session whose .request() returns the given response."""
    ctx = AsyncMock()
    if enter_error is not None:
        ctx.__aenter__ = AsyncMock(side_effect=enter_error)
    else:
        ctx.__aenter__ = AsyncMock(return_value=response)
    ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.closed = False
    session.request = MagicMock(return_value=ctx)
    return session


def _client(session) -> BookingApiClient:
    return BookingApiClient(base_url=BASE, timeout_sec=1.0, session=session)


class TestParsing:
    def test_bare_booking(self):
        assert parse_booking(wire(make_booking())).id == "b1"

    def test_wrapped_booking(self):
        assert parse_booking({"booking": wire(make_booking())}).id == "b1"

    def test_malformed_booking_raises(self):
        with pytest.raises(BookingApiError, match="Malformed"):
            parse_booking({"booking": {"status": "pending"}})

    def test_list_unwrapped_and_filtered(self):
        records = parse_booking_list({"bookings": [wire(make_booking()), "junk", 3]})
        assert len(records) == 1

    def test_list_must_be_list(self):
        with pytest.raises(BookingApiError):
            parse_booking_list({"bookings": {"_id": "b1"}})


class TestRequests:
    @pytest.mark.asyncio
    async def test_fetch_bookings_path_by_role(self):
        session = _make_mock_session(_make_mock_response(200, [wire(make_booking())]))
        records = await _client(session).fetch_bookings("w-a", ActorRole.WORKER)
        assert records[0]["_id"] == "b1"
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url == f"{BASE}/api/bookings/worker/w-a"

    @pytest.mark.asyncio
    async def test_update_status_sends_fields(self):
        updated = make_booking(status=BookingStatus.ARRIVED, worker_id="w-a")
        session = _make_mock_session(_make_mock_response(200, {"booking": wire(updated)}))
        booking = await _client(session).update_status(
            "b1", BookingStatus.ARRIVED, arrivedAt="2025-03-15T10:05:00Z"
        )
        assert booking.status == BookingStatus.ARRIVED
        assert session.request.call_args.kwargs["json"] == {
            "status": "arrived", "arrivedAt": "2025-03-15T10:05:00Z",
        }

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        session = _make_mock_session(_make_mock_response(503, {"message": "Down for maintenance"}))
        with pytest.raises(BookingApiError, match="Down for maintenance") as info:
            await _client(session).get_booking("b1")
        assert info.value.status == 503
        assert info.value.retryable

    @pytest.mark.asyncio
    async def test_not_found_not_retryable(self):
        session = _make_mock_session(_make_mock_response(404, {"error": "Booking not found"}))
        with pytest.raises(BookingApiError) as info:
            await _client(session).get_booking("b1")
        assert not info.value.retryable

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        resp = _make_mock_response(502)
        resp.json = AsyncMock(side_effect=ValueError("not json"))
        with pytest.raises(BookingApiError, match="returned 502"):
            await _client(_make_mock_session(resp)).get_booking("b1")

    @pytest.mark.asyncio
    async def test_network_error_is_transport_error(self):
        session = _make_mock_session(enter_error=aiohttp.ClientError("Connection refused"))
        with pytest.raises(TransportError) as info:
            await _client(session).get_booking("b1")
        assert info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self):
        session = _make_mock_session(enter_error=asyncio.TimeoutError())
        with pytest.raises(TransportError):
            await _client(session).get_booking("b1")

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_session_open(self):
        session = _make_mock_session(_make_mock_response(200, {}))
        session.close = AsyncMock()
        await _client(session).close()
        session.close.assert_not_called()


class TestAccept:
    @pytest.mark.asyncio
    async def test_accept_success(self):
        accepted = make_booking(status=BookingStatus.ACCEPTED, worker_id="w-a")
        session = _make_mock_session(_make_mock_response(200, {"booking": wire(accepted)}))
        booking = await _client(session).accept_booking("b1", "w-a")
        assert booking.assigned_worker_id == "w-a"
        assert session.request.call_args.kwargs["json"] == {"workerId": "w-a"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, message", [
        (400, "Booking already accepted by another worker"),
        (409, "This booking is no longer available"),
    ])
    async def test_accept_race_lost(self, status, message):
        session = _make_mock_session(_make_mock_response(status, {"message": message}))
        with pytest.raises(RaceLostError):
            await _client(session).accept_booking("b1", "w-a")

    @pytest.mark.asyncio
    async def test_accept_assigned_to_someone_else(self):
        other = make_booking(status=BookingStatus.ACCEPTED, worker_id="w-b")
        session = _make_mock_session(_make_mock_response(200, wire(other)))
        with pytest.raises(RaceLostError) as info:
            await _client(session).accept_booking("b1", "w-a")
        assert info.value.winner_id == "w-b"

    @pytest.mark.asyncio
    async def test_accept_other_client_error_is_not_race(self):
        session = _make_mock_session(_make_mock_response(400, {"message": "Booking has been cancelled"}))
        with pytest.raises(BookingApiError) as info:
            await _client(session).accept_booking("b1", "w-a")
        assert not isinstance(info.value, RaceLostError)

    @pytest.mark.asyncio
    async def test_accept_without_booking_in_body_fails(self):
        session = _make_mock_session(_make_mock_response(200, {"success": True}))
        with pytest.raises(BookingApiError):
            await _client(session).accept_booking("b1", "w-a")


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_without_booking(self):
        session = _make_mock_session(_make_mock_response(200, {"message": "Booking rejected"}))
        assert await _client(session).reject_booking("b1", "w-a") is None

    @pytest.mark.asyncio
    async def test_reject_returns_booking_when_present(self):
        session = _make_mock_session(_make_mock_response(200, {"booking": wire(make_booking())}))
        booking = await _client(session).reject_booking("b1", "w-a")
        assert booking.status == BookingStatus.PENDING
