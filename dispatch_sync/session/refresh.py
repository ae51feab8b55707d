"""
Debounced re-fetch and the REST polling fallback.

Channel events can be missed (reconnects, backgrounding). Sessions cover
the gap by re-fetching their booking list: on a timer, after a reconnect,
and whenever a handler asks for it. Requests that arrive while one is
already scheduled collapse into that one.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from dispatch_sync.transport.rest_client import BookingApiError

logger = logging.getLogger(__name__)


class RefreshScheduler:
    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        debounce_sec: float,
        poll_interval_sec: float,
    ) -> None:
        self._fetch = fetch
        self._debounce = debounce_sec
        self._poll_interval = poll_interval_sec
        self._lock = asyncio.Lock()
        self._pending: Optional[asyncio.Task] = None
        self._poller: Optional[asyncio.Task] = None
        self._stopped = False
        self.runs = 0
        self.failures = 0

    @property
    def scheduled(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def request(self, reason: str = "requested") -> bool:
        """Schedule a re-fetch after the debounce window.

        Returns False if one is already scheduled (the request is coalesced)
        or the scheduler has been stopped.
        """
        if self._stopped:
            return False
        if self.scheduled:
            logger.debug("Refresh (%s) coalesced with pending refresh", reason)
            return False
        self._pending = asyncio.get_running_loop().create_task(
            self._debounced(reason), name=f"refresh:{reason}"
        )
        return True

    async def _debounced(self, reason: str) -> None:
        await asyncio.sleep(self._debounce)
        await self.refresh_now(reason)

    async def refresh_now(self, reason: str = "manual") -> bool:
        """Fetch immediately. Returns False if the fetch failed."""
        async with self._lock:
            try:
                await self._fetch()
            except BookingApiError as exc:
                self.failures += 1
                logger.warning("Refresh (%s) failed: %s", reason, exc)
                return False
            self.runs += 1
            logger.debug("Refresh (%s) complete", reason)
            return True

    def start_polling(self) -> None:
        if self._stopped or (self._poller is not None and not self._poller.done()):
            return
        self._poller = asyncio.get_running_loop().create_task(self._poll(), name="refresh:poll")

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            await self.refresh_now("poll")

    def stop(self) -> bool:
        """Cancel the scheduled refresh and the poller. Idempotent."""
        if self._stopped:
            return False
        self._stopped = True
        for task in (self._pending, self._poller):
            if task is not None and not task.done():
                task.cancel()
        return True
