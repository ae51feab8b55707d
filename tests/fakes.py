"""Recording and scripted collaborators for session tests."""

import asyncio
import json
from types import SimpleNamespace
from typing import Optional

import aiohttp

from dispatch_sync.schemas.booking_schema import Booking, Coordinate


class RecordingAlertSink:
    """Records every device call instead of making noise."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Optional[str]]] = []
        self.beeps = 0
        self.vibrating = False
        self.banners: list[str] = []

    def beep(self) -> None:
        self.beeps += 1

    def vibrate(self) -> None:
        self.vibrating = True
        self.calls.append(("vibrate", None))

    def cancel_vibration(self) -> None:
        self.vibrating = False
        self.calls.append(("cancel_vibration", None))

    def show_banner(self, booking: Booking) -> None:
        self.banners.append(booking.id)
        self.calls.append(("show", booking.id))

    def hide_banner(self, booking_id: str) -> None:
        if booking_id in self.banners:
            self.banners.remove(booking_id)
        self.calls.append(("hide", booking_id))

    def shown(self) -> list[str]:
        return [ref for kind, ref in self.calls if kind == "show"]


class ScriptedLocationSource:
    """Returns the scripted points in order, then repeats the last one."""

    def __init__(self, points: list[Coordinate], fail_first: int = 0) -> None:
        self._points = list(points)
        self._fail = fail_first
        self.reads = 0

    async def current(self) -> Optional[Coordinate]:
        self.reads += 1
        if self._fail > 0:
            self._fail -= 1
            raise RuntimeError("GPS unavailable")
        if not self._points:
            return None
        if len(self._points) > 1:
            return self._points.pop(0)
        return self._points[0]


def offset(point: Coordinate, north_m: float) -> Coordinate:
    """A point ``north_m`` metres north of ``point`` (1e-5 deg lat ~= 1.11 m)."""
    return Coordinate(latitude=point.latitude + north_m / 111_195.0, longitude=point.longitude)


class FakeWebSocket:
    """Scripted server side of one WebSocket connection.

    Yields the scripted messages, then either ends (server closed) or, with
    ``hold=True``, blocks until the test cancels the listener.
    """

    def __init__(self, messages: Optional[list] = None, hold: bool = False) -> None:
        self._messages = list(messages or [])
        self._hold = hold
        self.sent: list[str] = []
        self.closed = False

    async def __aenter__(self) -> "FakeWebSocket":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        self.closed = True
        return False

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    def exception(self) -> Optional[BaseException]:
        return ConnectionResetError("peer reset")

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self):
        if self._messages:
            await asyncio.sleep(0)
            return self._messages.pop(0)
        if self._hold:
            await asyncio.Event().wait()
        raise StopAsyncIteration


def text_frame(event: str, data) -> SimpleNamespace:
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps({"event": event, "data": data}))


def error_frame() -> SimpleNamespace:
    return SimpleNamespace(type=aiohttp.WSMsgType.ERROR, data=None)


class FakeWsSession:
    """Hands out scripted connections; refuses once they run out."""

    def __init__(self, connections: list) -> None:
        self._connections = list(connections)
        self.connects = 0
        self.heartbeats: list[float] = []
        self.closed = False

    def ws_connect(self, url: str, heartbeat: Optional[float] = None):
        self.connects += 1
        self.heartbeats.append(heartbeat)
        if not self._connections:
            raise aiohttp.ClientConnectionError(f"cannot connect to {url}")
        nxt = self._connections.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    async def close(self) -> None:
        self.closed = True
