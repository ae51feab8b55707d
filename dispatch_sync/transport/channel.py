"""
Publish/subscribe event channel over a WebSocket.

Frames are JSON objects ``{"event": <name>, "data": <payload>}``. On every
(re)connect the client first sends ``authenticate {userId, userType}`` so
the backend can route per-user events to this socket.

The channel is an owned resource: ``start()`` returns a ``ChannelHandle``
whose ``stop()`` tears down the listener and the socket and is safe to
call repeatedly. Handler exceptions are logged and never stop the listener.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import aiohttp
from pydantic import ValidationError

from dispatch_sync.config import ChannelConfig, settings
from dispatch_sync.schemas.event_schema import ActorRole, ChannelEvent, ChannelFrame

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[Any]]]
EventName = Union[ChannelEvent, str]


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


StateListener = Callable[[ChannelState], None]


class ChannelError(Exception):
    """The channel connection failed or broke."""


def reconnect_delay(attempt: int, base_sec: float, max_sec: float) -> float:
    """Exponential backoff for the ``attempt``-th consecutive failure (1-based)."""
    return min(base_sec * (2 ** max(0, attempt - 1)), max_sec)


def event_name(event: EventName) -> str:
    return event.value if isinstance(event, ChannelEvent) else event


class ChannelHandle:
    """Owned handle on a started channel."""

    def __init__(self, shutdown: Callable[[], None]) -> None:
        self._shutdown = shutdown
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> bool:
        """Close the channel. Returns False if already stopped."""
        if self._stopped:
            return False
        self._stopped = True
        self._shutdown()
        return True


class Channel(Protocol):
    """What sessions need from an event channel."""

    @property
    def connected(self) -> bool: ...

    def on(self, event: EventName, handler: Handler) -> None: ...

    def off(self, event: EventName, handler: Handler) -> None: ...

    def on_state(self, listener: StateListener) -> None: ...

    async def emit(self, event: EventName, data: Any) -> bool: ...

    def start(self) -> ChannelHandle: ...


class HandlerRegistry:
    """Event handler bookkeeping and dispatch shared by channel implementations."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._state_listeners: list[StateListener] = []
        self._state = ChannelState.DISCONNECTED

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ChannelState.CONNECTED

    def on(self, event: EventName, handler: Handler) -> None:
        self._handlers[event_name(event)].append(handler)

    def off(self, event: EventName, handler: Handler) -> None:
        handlers = self._handlers.get(event_name(event), [])
        if handler in handlers:
            handlers.remove(handler)

    def on_state(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: ChannelState) -> None:
        if state == self._state:
            return
        old, self._state = self._state, state
        logger.info("Channel %s -> %s", old.value, state.value)
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Channel state listener failed")

    async def dispatch(self, event: str, data: Any) -> int:
        """Run every handler registered for ``event``. Returns how many ran."""
        handlers = list(self._handlers.get(event, []))
        if not handlers:
            logger.debug("No handler for channel event %s", event)
            return 0
        for handler in handlers:
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", event)
        return len(handlers)

    async def dispatch_text(self, text: str) -> int:
        """Decode one wire frame and dispatch it; malformed frames are dropped."""
        try:
            frame = ChannelFrame.model_validate_json(text)
        except ValidationError:
            logger.warning("Discarding malformed channel frame: %.200s", text)
            return 0
        return await self.dispatch(frame.event, frame.data)


class EventChannel(HandlerRegistry):
    """aiohttp WebSocket implementation of ``Channel``."""

    def __init__(
        self,
        actor_id: str,
        role: ActorRole,
        url: Optional[str] = None,
        config: Optional[ChannelConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        super().__init__()
        self._actor_id = actor_id
        self._role = role
        self._url = url or settings.backend.channel_url
        self._config = config or settings.channel
        self._session = session
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> ChannelHandle:
        if self._task is not None and not self._task.done():
            raise ChannelError("Channel already started")
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"channel:{self._role.value}:{self._actor_id}"
        )
        return ChannelHandle(self._shutdown)

    def _shutdown(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._set_state(ChannelState.CLOSED)

    async def emit(self, event: EventName, data: Any) -> bool:
        """Send one frame. Returns False if the socket is not open."""
        ws = self._ws
        name = event_name(event)
        if ws is None or ws.closed:
            logger.debug("Channel closed; dropping outgoing %s", name)
            return False
        try:
            await ws.send_str(ChannelFrame(event=name, data=data).model_dump_json())
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("Failed to send %s: %s", name, exc)
            return False
        return True

    async def _run(self) -> None:
        session = self._session or aiohttp.ClientSession()
        failures = 0
        try:
            while True:
                self._set_state(ChannelState.CONNECTING)
                try:
                    async with session.ws_connect(
                        self._url, heartbeat=self._config.heartbeat_sec
                    ) as ws:
                        self._ws = ws
                        failures = 0
                        await self._authenticate()
                        self._set_state(ChannelState.CONNECTED)
                        await self._listen(ws)
                except (aiohttp.ClientError, asyncio.TimeoutError, ChannelError) as exc:
                    logger.warning("Channel connection lost: %s", exc)
                finally:
                    self._ws = None

                self._set_state(ChannelState.DISCONNECTED)
                failures += 1
                limit = self._config.max_reconnect_attempts
                if limit and failures > limit:
                    logger.error("Giving up on channel after %d attempts", limit)
                    self._set_state(ChannelState.CLOSED)
                    return
                delay = reconnect_delay(
                    failures,
                    self._config.reconnect_delay_sec,
                    self._config.reconnect_max_delay_sec,
                )
                logger.info("Reconnecting in %.1fs (attempt %d)", delay, failures)
                await asyncio.sleep(delay)
        finally:
            if self._session is None:
                await session.close()

    async def _authenticate(self) -> None:
        sent = await self.emit(
            ChannelEvent.AUTHENTICATE,
            {"userId": self._actor_id, "userType": self._role.value},
        )
        if not sent:
            raise ChannelError("Could not authenticate channel")

    async def _listen(self, ws: Any) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self.dispatch_text(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ChannelError(f"WebSocket error: {ws.exception()}")
