"""Shared fixtures and fakes for tracking console tests."""
from datetime import datetime, timedelta, timezone

import pytest

from services.tracking.models import OnlineUser, TrackingRecord


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeAPI:
    """In-memory stand-in for RemoteAPI. Set `fail[name] = exc` to make a call raise."""

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.active_tracking = []
        self.active_events = []
        self.volunteer_assignments = []
        self.tracking_info = {}

    async def _call(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.fail:
            raise self.fail[name]

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    async def update_location(self, latitude, longitude):
        await self._call("update_location", latitude, longitude)
        return {"success": True, "location": {"latitude": latitude, "longitude": longitude}}

    async def get_volunteer_assignments(self, volunteer_id):
        await self._call("get_volunteer_assignments", volunteer_id)
        return list(self.volunteer_assignments)

    async def update_tracking_status(self, assignment_id, status, latitude, longitude, notes=None):
        await self._call("update_tracking_status", assignment_id, status, latitude, longitude, notes)
        return {"success": True, "status": status}

    async def get_tracking_info(self, assignment_id):
        await self._call("get_tracking_info", assignment_id)
        return dict(self.tracking_info)

    async def get_active_tracking(self):
        await self._call("get_active_tracking")
        return list(self.active_tracking)

    async def get_active_events_with_coordinates(self):
        await self._call("get_active_events_with_coordinates")
        return list(self.active_events)

    async def update_event_location(self, event_id, latitude, longitude, full_address=None):
        await self._call("update_event_location", event_id, latitude, longitude, full_address=full_address)
        return {"id": event_id}


class FakeGeocoder:
    def __init__(self, address="הרצל 10, תל אביב"):
        self.address = address
        self.reverse_calls = []

    async def coordinates_to_address(self, latitude, longitude):
        self.reverse_calls.append((latitude, longitude))
        return self.address

    async def address_to_coordinates(self, address, country_code=None):
        return None


def online_user(user_id, lat=32.08, lng=34.78, updated=None, **extra) -> OnlineUser:
    return OnlineUser(
        id=str(user_id),
        full_name=extra.pop("full_name", f"User {user_id}"),
        role=extra.pop("role", "סייר"),
        last_latitude=lat,
        last_longitude=lng,
        last_location_update=updated,
        **extra,
    )


def tracking_record(assignment_id, volunteer_id, lat=32.09, lng=34.79, status="departure", **extra) -> TrackingRecord:
    return TrackingRecord(
        assignment_id=str(assignment_id),
        volunteer_id=str(volunteer_id),
        status=status,
        current_latitude=lat,
        current_longitude=lng,
        volunteer=extra.pop("volunteer", {"full_name": f"Volunteer {volunteer_id}"}),
        event=extra.pop("event", {"id": "e1", "title": "רכב גנוב", "full_address": "דיזנגוף 50"}),
        departure_time=extra.pop("departure_time", NOW - timedelta(minutes=12)),
        **extra,
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_api():
    return FakeAPI()


@pytest.fixture
def fake_geocoder():
    return FakeGeocoder()
