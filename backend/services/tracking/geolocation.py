"""
Geolocation Capture

Wraps the device position source behind two modes:

    single shot   get_current_position() / capture_for_transition()
    continuous    start_tracking() -> WatchHandle, stop_tracking()

Continuous mode polls the source and only delivers a reading downstream when
at least MIN_UPDATE_INTERVAL (30s) has passed since the last delivery, so
everything after it (reporter, server) is throttled at the source. A
PermissionDenied ends continuous tracking for good; the user has to start it
again, the loop never re-prompts.

Every request asks for high accuracy. Continuous readings may come from a
cache up to 60s old. Status-transition captures bypass the cache and time
out after 10s: the fix is stored on the assignment.

Position sources:
    FixedPositionSource      - a known post (station, checkpoint, dev)
    SimulatedPositionSource  - walks from a start point toward a destination
"""

import asyncio
import inspect
import logging
import math
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from services.tracking.errors import (
    GeolocationError, PermissionDenied, PositionUnavailable, GeolocationTimeout, Unsupported,
)
from services.tracking.models import PositionReading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionOptions:
    high_accuracy: bool = True
    timeout: float = 10.0       # seconds
    maximum_age: float = 60.0   # seconds; 0 = never use a cached reading


CONTINUOUS_OPTIONS = PositionOptions(high_accuracy=True, timeout=10.0, maximum_age=60.0)
TRANSITION_OPTIONS = PositionOptions(high_accuracy=True, timeout=10.0, maximum_age=0.0)


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


# =============================================================================
# POSITION SOURCES
# =============================================================================

class PositionSource(ABC):
    """Device location API. Implementations raise the GeolocationError subclasses."""

    supported = True

    @abstractmethod
    async def read(self, high_accuracy: bool = True) -> PositionReading:
        ...

    async def request_permission(self) -> bool:
        return True


class FixedPositionSource(PositionSource):
    def __init__(self, latitude: float, longitude: float, accuracy: float = 5.0, permission_granted: bool = True):
        self.latitude = latitude
        self.longitude = longitude
        self.accuracy = accuracy
        self.permission_granted = permission_granted

    async def read(self, high_accuracy: bool = True) -> PositionReading:
        if not self.permission_granted:
            raise PermissionDenied()
        return PositionReading(latitude=self.latitude, longitude=self.longitude, accuracy=self.accuracy)

    async def request_permission(self) -> bool:
        return self.permission_granted


class SimulatedPositionSource(PositionSource):
    """
    Moves in a straight line from start toward destination at speed_mps,
    based on wall time since the first read. Stops at the destination.
    Useful for drills and for exercising the follow/debounce logic.
    """

    METERS_PER_DEGREE_LAT = 111_320.0

    def __init__(
        self,
        start: tuple,
        destination: Optional[tuple] = None,
        speed_mps: float = 12.0,
        jitter_m: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.start = start
        self.destination = destination or start
        self.speed_mps = speed_mps
        self.jitter_m = jitter_m
        self._clock = clock
        self._started_at: Optional[float] = None

    def _position_at(self, elapsed: float) -> tuple:
        lat1, lng1 = self.start
        lat2, lng2 = self.destination
        dy = (lat2 - lat1) * self.METERS_PER_DEGREE_LAT
        dx = (lng2 - lng1) * self.METERS_PER_DEGREE_LAT * math.cos(math.radians(lat1))
        total = math.hypot(dx, dy)
        if total == 0:
            return lat1, lng1
        fraction = min(1.0, (elapsed * self.speed_mps) / total)
        return lat1 + (lat2 - lat1) * fraction, lng1 + (lng2 - lng1) * fraction

    async def read(self, high_accuracy: bool = True) -> PositionReading:
        now = self._clock()
        if self._started_at is None:
            self._started_at = now
        lat, lng = self._position_at(now - self._started_at)
        if self.jitter_m:
            lat += random.uniform(-self.jitter_m, self.jitter_m) / self.METERS_PER_DEGREE_LAT
            lng += random.uniform(-self.jitter_m, self.jitter_m) / self.METERS_PER_DEGREE_LAT
        accuracy = 5.0 if high_accuracy else 50.0
        return PositionReading(latitude=lat, longitude=lng, accuracy=accuracy)


# =============================================================================
# CAPTURE
# =============================================================================

class WatchHandle:
    """Cancellable subscription to continuous position updates."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self):
        if not self._task.done():
            self._task.cancel()

    async def wait(self):
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class GeolocationCapture:
    MIN_UPDATE_INTERVAL = 30.0
    POLL_INTERVAL = 5.0

    def __init__(
        self,
        source: Optional[PositionSource],
        min_update_interval: float = MIN_UPDATE_INTERVAL,
        poll_interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.min_update_interval = min_update_interval
        self.poll_interval = poll_interval
        self._clock = clock
        self._cached: Optional[PositionReading] = None
        self._cached_at: Optional[float] = None
        self._last_delivered_at: Optional[float] = None
        self._watch: Optional[WatchHandle] = None

    def is_supported(self) -> bool:
        return self.source is not None and self.source.supported

    @property
    def is_tracking(self) -> bool:
        return self._watch is not None and self._watch.active

    async def request_permission(self) -> bool:
        if not self.is_supported():
            raise Unsupported()
        try:
            await self.get_current_position()
        except PermissionDenied:
            raise
        except GeolocationError:
            # Permission granted, just no fix right now
            return True
        return True

    async def get_current_position(self, options: PositionOptions = CONTINUOUS_OPTIONS) -> PositionReading:
        if not self.is_supported():
            raise Unsupported()

        if options.maximum_age > 0 and self._cached is not None:
            if self._clock() - self._cached_at <= options.maximum_age:
                return self._cached

        try:
            reading = await asyncio.wait_for(
                self.source.read(high_accuracy=options.high_accuracy),
                timeout=options.timeout,
            )
        except asyncio.TimeoutError:
            raise GeolocationTimeout()

        if reading is None:
            raise PositionUnavailable()

        self._cached = reading
        self._cached_at = self._clock()
        return reading

    async def capture_for_transition(self) -> PositionReading:
        """Fresh high-accuracy fix for a status transition (no cache, 10s timeout)."""
        return await self.get_current_position(TRANSITION_OPTIONS)

    def start_tracking(self, on_position: Callable, on_error: Optional[Callable] = None) -> WatchHandle:
        if not self.is_supported():
            raise Unsupported()
        if self.is_tracking:
            logger.info("Location tracking already active")
            return self._watch

        self._last_delivered_at = None
        task = asyncio.create_task(self._watch_loop(on_position, on_error))
        self._watch = WatchHandle(task)
        logger.info("Starting location tracking...")
        return self._watch

    def stop_tracking(self):
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None
            logger.info("Location tracking stopped")

    async def _watch_loop(self, on_position: Callable, on_error: Optional[Callable]):
        while True:
            try:
                reading = await self.get_current_position(CONTINUOUS_OPTIONS)
            except PermissionDenied as e:
                logger.warning("User denied the request for geolocation - continuous tracking stopped")
                await self._notify(on_error, e)
                return
            except GeolocationError as e:
                logger.warning(f"Location error: {e}")
                await self._notify(on_error, e)
            else:
                now = self._clock()
                if self._last_delivered_at is None or now - self._last_delivered_at >= self.min_update_interval:
                    self._last_delivered_at = now
                    await self._notify(on_position, reading)

            await asyncio.sleep(self.poll_interval)

    @staticmethod
    async def _notify(callback: Optional[Callable], value):
        if callback is None:
            return
        try:
            await _maybe_await(callback(value))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Position callback failed: {e}", exc_info=True)
