"""
Position Reporter

Forwards continuous positions from GeolocationCapture to the location
update endpoint. Throttling happens at the capture (30s minimum between
deliveries); the reporter additionally skips a send when the volunteer has
moved less than MIN_DISTANCE_M since the last accepted report and the
last report is younger than REFRESH_SECONDS.

A 401 from the server means the session is gone: tracking stops and the
auth sink is told so the UI can force a re-login. Network failures are
logged and the next delivery simply tries again.
"""

import logging
import time
from typing import Callable, Optional

from services.location.distance import haversine_m, is_valid_position
from services.tracking.errors import AuthExpired, NetworkFailure, PermissionDenied
from services.tracking.geolocation import GeolocationCapture, WatchHandle
from services.tracking.models import PositionReading

logger = logging.getLogger(__name__)


class PositionReporter:
    MIN_DISTANCE_M = 10.0
    REFRESH_SECONDS = 120.0

    def __init__(
        self,
        capture: GeolocationCapture,
        api,
        on_auth_expired: Optional[Callable] = None,
        on_permission_denied: Optional[Callable] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capture = capture
        self.api = api
        self.on_auth_expired = on_auth_expired
        self.on_permission_denied = on_permission_denied
        self._clock = clock
        self._handle: Optional[WatchHandle] = None
        self.last_reported: Optional[PositionReading] = None
        self._last_reported_at: Optional[float] = None
        self.reports_sent = 0

    @property
    def is_tracking(self) -> bool:
        return self._handle is not None and self._handle.active

    def start(self) -> WatchHandle:
        if self.is_tracking:
            logger.info("Position reporter already running")
            return self._handle
        self._handle = self.capture.start_tracking(self._on_position, self._on_error)
        return self._handle

    def stop(self):
        self.capture.stop_tracking()
        self._handle = None

    async def update_location_now(self) -> dict:
        """Manual trigger: one fresh fix sent immediately, errors propagate."""
        reading = await self.capture.get_current_position()
        result = await self.api.update_location(reading.latitude, reading.longitude)
        if result.get("success"):
            self._mark_reported(reading)
            logger.info("Manual location update successful")
        return result.get("location") or {}

    def _should_send(self, reading: PositionReading) -> bool:
        if not is_valid_position(reading.latitude, reading.longitude):
            logger.debug(f"Not reporting invalid fix ({reading.latitude}, {reading.longitude})")
            return False
        if self.last_reported is None or self._last_reported_at is None:
            return True
        if self._clock() - self._last_reported_at >= self.REFRESH_SECONDS:
            return True
        moved = haversine_m(
            self.last_reported.latitude, self.last_reported.longitude,
            reading.latitude, reading.longitude,
        )
        return moved >= self.MIN_DISTANCE_M

    def _mark_reported(self, reading: PositionReading):
        self.last_reported = reading
        self._last_reported_at = self._clock()
        self.reports_sent += 1

    async def _on_position(self, reading: PositionReading):
        if not self._should_send(reading):
            return
        try:
            result = await self.api.update_location(reading.latitude, reading.longitude)
        except AuthExpired:
            logger.warning("Location update rejected (401) - stopping location tracking")
            self.stop()
            if self.on_auth_expired:
                self.on_auth_expired()
            return
        except NetworkFailure as e:
            logger.error(f"Error updating location: {e}")
            return

        if result.get("success"):
            self._mark_reported(reading)
            logger.info(f"Location updated successfully: ({reading.latitude:.5f}, {reading.longitude:.5f})")
        else:
            logger.warning(f"Location update not accepted by server: {result}")

    def _on_error(self, error: Exception):
        if isinstance(error, PermissionDenied):
            self._handle = None
            if self.on_permission_denied:
                self.on_permission_denied(error)
