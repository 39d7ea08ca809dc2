"""
Tracking data model

In-memory records the console works with. Wire payloads (roster rows from
the presence channel, active-tracking rows, assignment and event rows from
the remote API) are parsed once at the edge with the from_payload()
constructors; everything downstream works with these dataclasses.

Volunteer and assignment ids are normalised to strings: the roster and the
assignment service do not agree on numeric vs. string ids, and map entry
ids / memory keys must match across both sources.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, Any, Dict

from services.location.distance import parse_coordinate


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (with or without 'Z') to an aware datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _id(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)


# =============================================================================
# STATUS VOCABULARY
# =============================================================================

class AssignmentStatus:
    ASSIGNED = "assigned"
    DEPARTURE = "departure"
    ARRIVED_AT_SCENE = "arrived_at_scene"
    TASK_COMPLETED = "task_completed"

    ORDER = [ASSIGNED, DEPARTURE, ARRIVED_AT_SCENE, TASK_COMPLETED]
    TERMINAL = TASK_COMPLETED


class EntryStatus:
    ONLINE = "online"
    DEPARTURE = AssignmentStatus.DEPARTURE
    ARRIVED_AT_SCENE = AssignmentStatus.ARRIVED_AT_SCENE
    TASK_COMPLETED = AssignmentStatus.TASK_COMPLETED
    TEMPORARILY_DISCONNECTED = "temporarily_disconnected"


class SourceType:
    ONLINE = "online"
    TRACKING = "tracking"


# =============================================================================
# POSITIONS
# =============================================================================

@dataclass
class PositionReading:
    """One fix from the device position source."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "timestamp": format_timestamp(self.timestamp),
        }


# =============================================================================
# PRESENCE ROSTER
# =============================================================================

@dataclass
class OnlineUser:
    """One row of the presence roster (online-users-updated)."""
    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    role: Optional[str] = None
    phone_number: Optional[str] = None
    photo_url: Optional[str] = None
    last_latitude: Optional[float] = None
    last_longitude: Optional[float] = None
    last_location_update: Optional[datetime] = None
    has_car: bool = False
    car_type: Optional[str] = None
    license_plate: Optional[str] = None
    car_color: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict) -> Optional["OnlineUser"]:
        user_id = _id(data.get("id", data.get("userId")))
        if user_id is None:
            return None
        return cls(
            id=user_id,
            username=data.get("username"),
            full_name=data.get("full_name") or data.get("fullName"),
            role=data.get("role"),
            phone_number=data.get("phone_number"),
            photo_url=data.get("photo_url"),
            last_latitude=parse_coordinate(data.get("last_latitude")),
            last_longitude=parse_coordinate(data.get("last_longitude")),
            last_location_update=parse_timestamp(data.get("last_location_update")),
            has_car=bool(data.get("has_car")),
            car_type=data.get("car_type"),
            license_plate=data.get("license_plate"),
            car_color=data.get("car_color"),
        )

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or "משתמש"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_location_update"] = format_timestamp(self.last_location_update)
        return data


# =============================================================================
# ACTIVE TRACKING
# =============================================================================

@dataclass
class TrackingRecord:
    """One row of get-active-tracking: a volunteer currently on a mission."""
    assignment_id: str
    volunteer_id: str
    status: str
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None
    volunteer: Dict[str, Any] = field(default_factory=dict)
    event: Optional[Dict[str, Any]] = None
    departure_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, data: dict) -> Optional["TrackingRecord"]:
        volunteer = data.get("volunteer") or {}
        assignment_id = _id(data.get("assignment_id", data.get("id")))
        volunteer_id = _id(data.get("volunteer_id", volunteer.get("id")))
        if assignment_id is None or volunteer_id is None:
            return None
        return cls(
            assignment_id=assignment_id,
            volunteer_id=volunteer_id,
            status=data.get("status") or data.get("response_type") or AssignmentStatus.ASSIGNED,
            current_latitude=parse_coordinate(data.get("current_latitude")),
            current_longitude=parse_coordinate(data.get("current_longitude")),
            volunteer=volunteer,
            event=data.get("event"),
            departure_time=parse_timestamp(data.get("departure_time")),
            arrival_time=parse_timestamp(data.get("arrival_time")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status == AssignmentStatus.TERMINAL


# =============================================================================
# MAP ENTRIES
# =============================================================================

@dataclass
class MapEntry:
    """Reconciled, renderable position of one volunteer."""
    id: str
    volunteer_id: str
    name: str
    latitude: float
    longitude: float
    status: str
    source_type: str
    is_live: bool
    last_seen: datetime
    role: Optional[str] = None
    phone: Optional[str] = None
    photo_url: Optional[str] = None
    event: Optional[Dict[str, Any]] = None
    departure_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    has_car: bool = False
    car_type: Optional[str] = None
    license_plate: Optional[str] = None
    car_color: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_seen"] = format_timestamp(self.last_seen)
        data["departure_time"] = format_timestamp(self.departure_time)
        data["arrival_time"] = format_timestamp(self.arrival_time)
        return data


# =============================================================================
# ASSIGNMENTS
# =============================================================================

@dataclass
class ResponseTimes:
    travel_minutes: Optional[int] = None
    on_scene_minutes: Optional[int] = None
    total_minutes: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Optional[dict]) -> Optional["ResponseTimes"]:
        if not data:
            return None
        return cls(
            travel_minutes=data.get("travel_minutes", data.get("travel_time")),
            on_scene_minutes=data.get("on_scene_minutes", data.get("on_scene_time")),
            total_minutes=data.get("total_minutes", data.get("total_time")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if not start or not end:
        return None
    return round((end - start).total_seconds() / 60)


def compute_response_times(
    departure_time: Optional[datetime],
    arrival_time: Optional[datetime],
    completion_time: Optional[datetime],
) -> ResponseTimes:
    """Travel = departure→arrival, on scene = arrival→completion, total = departure→completion."""
    return ResponseTimes(
        travel_minutes=_minutes_between(departure_time, arrival_time),
        on_scene_minutes=_minutes_between(arrival_time, completion_time),
        total_minutes=_minutes_between(departure_time, completion_time),
    )


@dataclass
class Assignment:
    """One volunteer's mission on one event."""
    id: str
    volunteer_id: str
    event_id: Optional[str]
    status: str = AssignmentStatus.ASSIGNED
    departure_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None
    response_times: Optional[ResponseTimes] = None
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict) -> Optional["Assignment"]:
        assignment_id = _id(data.get("id", data.get("assignment_id")))
        volunteer_id = _id(data.get("volunteer_id"))
        if assignment_id is None or volunteer_id is None:
            return None
        assignment = cls(
            id=assignment_id,
            volunteer_id=volunteer_id,
            event_id=_id(data.get("event_id")),
        )
        assignment.apply_tracking_info(data)
        return assignment

    def apply_tracking_info(self, data: dict):
        """Merge a tracking-info payload (timestamps, status, metrics) into this assignment."""
        status = data.get("response_type") or data.get("status")
        if status in AssignmentStatus.ORDER:
            self.status = status
        for name in ("departure_time", "arrival_time", "completion_time"):
            if name in data:
                parsed = parse_timestamp(data.get(name))
                if parsed is not None:
                    setattr(self, name, parsed)
        lat = parse_coordinate(data.get("current_latitude"))
        lng = parse_coordinate(data.get("current_longitude"))
        if lat is not None and lng is not None:
            self.current_latitude = lat
            self.current_longitude = lng
        if "notes" in data:
            self.notes = data.get("notes")
        self.response_times = (
            ResponseTimes.from_payload(data.get("response_times"))
            or compute_response_times(self.departure_time, self.arrival_time, self.completion_time)
        )

    @property
    def is_terminal(self) -> bool:
        return self.status == AssignmentStatus.TERMINAL

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "volunteer_id": self.volunteer_id,
            "event_id": self.event_id,
            "status": self.status,
            "departure_time": format_timestamp(self.departure_time),
            "arrival_time": format_timestamp(self.arrival_time),
            "completion_time": format_timestamp(self.completion_time),
            "current_latitude": self.current_latitude,
            "current_longitude": self.current_longitude,
            "response_times": self.response_times.to_dict() if self.response_times else None,
            "notes": self.notes,
        }


# =============================================================================
# EVENTS / FLAGS
# =============================================================================

@dataclass
class Event:
    """Incident as far as the map is concerned: a flag with an address."""
    id: str
    latitude: Optional[float]
    longitude: Optional[float]
    title: Optional[str] = None
    full_address: Optional[str] = None
    event_status: Optional[str] = None
    license_plate: Optional[str] = None
    car_model: Optional[str] = None
    car_color: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict) -> Optional["Event"]:
        event_id = _id(data.get("id"))
        if event_id is None:
            return None
        return cls(
            id=event_id,
            latitude=parse_coordinate(data.get("event_latitude", data.get("latitude"))),
            longitude=parse_coordinate(data.get("event_longitude", data.get("longitude"))),
            title=data.get("title"),
            full_address=data.get("full_address"),
            event_status=data.get("event_status"),
            license_plate=data.get("license_plate"),
            car_model=data.get("car_model"),
            car_color=data.get("car_color"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FlagRelocation:
    """A dragged flag waiting for the dispatcher to confirm the new spot."""
    event_id: str
    original_position: tuple
    new_position: tuple
    original_address: Optional[str] = None
    new_address: Optional[str] = None
    distance_m: float = 0.0

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "original_position": {"latitude": self.original_position[0], "longitude": self.original_position[1]},
            "new_position": {"latitude": self.new_position[0], "longitude": self.new_position[1]},
            "original_address": self.original_address,
            "new_address": self.new_address,
            "distance_m": round(self.distance_m, 1),
        }
