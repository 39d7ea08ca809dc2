"""Tests for geolocation capture (single shot and continuous)."""
import asyncio

import pytest

from services.tracking.errors import (
    GeolocationTimeout, PermissionDenied, PositionUnavailable, Unsupported,
)
from services.tracking.geolocation import (
    FixedPositionSource, GeolocationCapture, PositionOptions, PositionSource, SimulatedPositionSource,
)
from services.tracking.models import PositionReading


class CountingSource(PositionSource):
    def __init__(self):
        self.reads = 0
        self.high_accuracy = []

    async def read(self, high_accuracy=True):
        self.reads += 1
        self.high_accuracy.append(high_accuracy)
        return PositionReading(latitude=32.08 + self.reads * 0.001, longitude=34.78)


class SlowSource(PositionSource):
    async def read(self, high_accuracy=True):
        await asyncio.sleep(5)


class EmptySource(PositionSource):
    async def read(self, high_accuracy=True):
        return None


class FlakySource(PositionSource):
    """Fails once, then succeeds."""

    def __init__(self):
        self.reads = 0

    async def read(self, high_accuracy=True):
        self.reads += 1
        if self.reads == 1:
            raise PositionUnavailable()
        return PositionReading(latitude=32.08, longitude=34.78)


async def spin(times=5):
    for _ in range(times):
        await asyncio.sleep(0)


class TestSingleShot:
    """get_current_position and transition captures"""

    @pytest.mark.asyncio
    async def test_unsupported_without_source(self):
        """No position source raises Unsupported"""
        capture = GeolocationCapture(None)
        assert capture.is_supported() is False
        with pytest.raises(Unsupported):
            await capture.get_current_position()

    @pytest.mark.asyncio
    async def test_permission_denied(self):
        """A source without permission raises PermissionDenied"""
        capture = GeolocationCapture(FixedPositionSource(32.08, 34.78, permission_granted=False))
        with pytest.raises(PermissionDenied):
            await capture.get_current_position()

    @pytest.mark.asyncio
    async def test_timeout(self):
        """A source slower than the timeout raises GeolocationTimeout"""
        capture = GeolocationCapture(SlowSource())
        with pytest.raises(GeolocationTimeout):
            await capture.get_current_position(PositionOptions(timeout=0.01, maximum_age=0))

    @pytest.mark.asyncio
    async def test_no_fix_is_unavailable(self):
        """A source that returns nothing raises PositionUnavailable"""
        capture = GeolocationCapture(EmptySource())
        with pytest.raises(PositionUnavailable):
            await capture.get_current_position()

    @pytest.mark.asyncio
    async def test_cached_reading_reused_within_max_age(self, clock):
        """Continuous-mode reads reuse a reading younger than 60s"""
        source = CountingSource()
        capture = GeolocationCapture(source, clock=clock)
        first = await capture.get_current_position()
        clock.advance(30)
        second = await capture.get_current_position()
        assert first is second
        assert source.reads == 1

        clock.advance(31)
        await capture.get_current_position()
        assert source.reads == 2

    @pytest.mark.asyncio
    async def test_transition_capture_bypasses_cache(self, clock):
        """capture_for_transition always takes a fresh high-accuracy fix"""
        source = CountingSource()
        capture = GeolocationCapture(source, clock=clock)
        await capture.get_current_position()
        await capture.capture_for_transition()
        assert source.reads == 2
        assert source.high_accuracy == [True, True]

    @pytest.mark.asyncio
    async def test_request_permission(self):
        """Permission request succeeds when the source grants it"""
        assert await GeolocationCapture(FixedPositionSource(32.08, 34.78)).request_permission() is True
        with pytest.raises(PermissionDenied):
            await GeolocationCapture(FixedPositionSource(32.08, 34.78, permission_granted=False)).request_permission()


class TestContinuousTracking:
    """start_tracking / stop_tracking"""

    @pytest.mark.asyncio
    async def test_deliveries_throttled_to_min_interval(self, clock):
        """Readings are delivered at most once per min_update_interval"""
        delivered = []
        capture = GeolocationCapture(CountingSource(), min_update_interval=30, poll_interval=0, clock=clock)
        capture.start_tracking(delivered.append)
        await spin()
        assert len(delivered) == 1

        clock.advance(10)
        await spin()
        assert len(delivered) == 1

        clock.advance(25)
        await spin()
        assert len(delivered) == 2
        capture.stop_tracking()

    @pytest.mark.asyncio
    async def test_permission_denied_stops_tracking(self):
        """PermissionDenied ends the watch and is reported once"""
        errors = []
        capture = GeolocationCapture(
            FixedPositionSource(32.08, 34.78, permission_granted=False), poll_interval=0,
        )
        handle = capture.start_tracking(lambda r: None, errors.append)
        await asyncio.wait_for(handle.wait(), timeout=1)

        assert len(errors) == 1
        assert isinstance(errors[0], PermissionDenied)
        assert capture.is_tracking is False

    @pytest.mark.asyncio
    async def test_transient_error_keeps_tracking(self, clock):
        """PositionUnavailable is reported but the watch continues"""
        delivered, errors = [], []
        capture = GeolocationCapture(FlakySource(), poll_interval=0, clock=clock)
        capture.start_tracking(delivered.append, errors.append)
        await spin(10)

        assert len(errors) == 1
        assert len(delivered) == 1
        assert capture.is_tracking is True
        capture.stop_tracking()

    @pytest.mark.asyncio
    async def test_stop_cancels_watch(self):
        """stop_tracking cancels the background task"""
        capture = GeolocationCapture(CountingSource(), poll_interval=0)
        handle = capture.start_tracking(lambda r: None)
        capture.stop_tracking()
        await handle.wait()
        assert handle.active is False
        assert capture.is_tracking is False

    @pytest.mark.asyncio
    async def test_start_twice_returns_same_handle(self):
        """A second start_tracking reuses the running watch"""
        capture = GeolocationCapture(CountingSource(), poll_interval=0)
        first = capture.start_tracking(lambda r: None)
        second = capture.start_tracking(lambda r: None)
        assert first is second
        capture.stop_tracking()


class TestSimulatedSource:
    """Simulated movement toward a destination"""

    @pytest.mark.asyncio
    async def test_walks_toward_destination(self, clock):
        """Position moves from start and stops at the destination"""
        source = SimulatedPositionSource(
            start=(32.0, 34.7), destination=(32.01, 34.7), speed_mps=100, jitter_m=0, clock=clock,
        )
        start = await source.read()
        assert (start.latitude, start.longitude) == (32.0, 34.7)

        clock.advance(5)
        midway = await source.read()
        assert 32.0 < midway.latitude < 32.01

        clock.advance(60)
        end = await source.read()
        assert end.latitude == pytest.approx(32.01)
