"""
Periodic location sampler for an active navigation.

Reads the device position every ``interval_sec`` and forwards a sample only
when the worker has moved at least ``distance_m`` since the last forwarded
sample. The first reading is always forwarded.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from dispatch_sync.schemas.booking_schema import Coordinate
from dispatch_sync.utils import haversine_km

logger = logging.getLogger(__name__)


class LocationSource(Protocol):
    """Device position provider (GPS, mock route, ...)."""

    async def current(self) -> Optional[Coordinate]: ...


@dataclass(frozen=True)
class LocationSample:
    coordinate: Coordinate
    timestamp: float


SampleCallback = Callable[[LocationSample], Union[None, Awaitable[Any]]]


class SamplerHandle:
    """Owned handle on a running sampler."""

    def __init__(self, task: asyncio.Task) -> None:
        self._task = task
        self._stopped = False

    @property
    def active(self) -> bool:
        return not self._stopped and not self._task.done()

    def stop(self) -> bool:
        """Cancel sampling. Returns False if already stopped."""
        if self._stopped:
            return False
        self._stopped = True
        if not self._task.done():
            self._task.cancel()
        return True


class LocationSampler:
    def __init__(
        self,
        source: LocationSource,
        on_sample: SampleCallback,
        interval_sec: float,
        distance_m: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._on_sample = on_sample
        self._interval = interval_sec
        self._distance_km = distance_m / 1000.0
        self._clock = clock
        self._last_sent: Optional[Coordinate] = None
        self.samples_sent = 0

    def start(self, name: str = "location-sampler") -> SamplerHandle:
        task = asyncio.get_running_loop().create_task(self._run(), name=name)
        return SamplerHandle(task)

    def _moved_enough(self, coordinate: Coordinate) -> bool:
        if self._last_sent is None:
            return True
        moved = haversine_km(
            self._last_sent.latitude, self._last_sent.longitude,
            coordinate.latitude, coordinate.longitude,
        )
        return moved >= self._distance_km

    async def _run(self) -> None:
        while True:
            await self._tick()
            await asyncio.sleep(self._interval)

    async def _tick(self) -> None:
        try:
            coordinate = await self._source.current()
        except Exception:
            logger.warning("Location read failed; will retry next interval", exc_info=True)
            return
        if coordinate is None or not self._moved_enough(coordinate):
            return

        sample = LocationSample(coordinate=coordinate, timestamp=self._clock())
        try:
            result = self._on_sample(sample)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Forwarding location sample failed", exc_info=True)
            return
        self._last_sent = coordinate
        self.samples_sent += 1
