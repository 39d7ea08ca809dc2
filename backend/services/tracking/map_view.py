"""
Map View state

Renderer-independent state of the live tracking map: one marker per
reconciled entry, one draggable flag per event with coordinates, the
viewport, the highlighted volunteer and at most one pending flag relocation.
The console UI draws whatever snapshot() returns.

Focus / follow:
    focus(entry_id) centres on the entry at FOCUS_ZOOM once and highlights
    the volunteer. While the highlighted volunteer keeps reporting fresh
    positions the viewport follows, debounced (~500ms) and only when the
    volunteer has moved at least ~20m from the last followed point.
    Selecting the same volunteer again clears the highlight; the highlight is
    also cleared when the volunteer drops out of the entry set.

Flag relocation:
    drag_start(event_id)   snapshot the flag's position
    drag_end(event_id, lat, lng)
        < ~10m             flag snaps back, nothing pending
        otherwise          flag moved optimistically, new position reverse
                           geocoded, FlagRelocation pending confirmation
    confirm_relocation()   write coordinates (+ address) to the event service;
                           failure reverts the flag and re-raises
    cancel_relocation()    revert the flag
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

import console_config
from services.location.distance import haversine_m, in_bounds
from services.tracking.errors import InvalidCoordinates, RelocationConflict
from services.tracking.models import (
    Event, EntryStatus, FlagRelocation, MapEntry, SourceType, format_timestamp, utcnow,
)
from services.tracking.reconciler import same_structure

logger = logging.getLogger(__name__)


# =============================================================================
# STYLING
# =============================================================================

STATUS_COLORS = {
    EntryStatus.ONLINE: '#2ecc71',
    EntryStatus.DEPARTURE: '#3498db',
    EntryStatus.ARRIVED_AT_SCENE: '#f39c12',
    EntryStatus.TASK_COMPLETED: '#27ae60',
    EntryStatus.TEMPORARILY_DISCONNECTED: '#95a5a6',
}
DEFAULT_STATUS_COLOR = '#2ecc71'

STATUS_TEXT = {
    EntryStatus.ONLINE: 'מחובר למערכת',
    EntryStatus.DEPARTURE: 'בדרך למקום',
    EntryStatus.ARRIVED_AT_SCENE: 'במקום האירוע',
    EntryStatus.TASK_COMPLETED: 'הושלם',
    EntryStatus.TEMPORARILY_DISCONNECTED: 'מנותק זמנית',
}

ROLE_COLORS = {
    'מפתח': '#9b59b6',
    'אדמין': '#e74c3c',
    'פיקוד יחידה': '#3498db',
    'מפקד משל"ט': '#f39c12',
    'מוקדן': '#2ecc71',
    'סייר': '#95a5a6',
}
DEFAULT_ROLE_COLOR = '#7f8c8d'

EVENT_FLAG_COLORS = {
    'פעיל': '#e74c3c',
    'הוקצה': '#f39c12',
    'בטיפול': '#3498db',
}
DEFAULT_FLAG_COLOR = '#2ecc71'


def status_color(status: str) -> str:
    return STATUS_COLORS.get(status, DEFAULT_STATUS_COLOR)


def role_color(role: Optional[str]) -> str:
    return ROLE_COLORS.get(role, DEFAULT_ROLE_COLOR)


def flag_color(event_status: Optional[str]) -> str:
    return EVENT_FLAG_COLORS.get(event_status, DEFAULT_FLAG_COLOR)


def elapsed_minutes(start: Optional[datetime], now: datetime) -> Optional[int]:
    if start is None:
        return None
    return max(0, round((now - start).total_seconds() / 60))


# =============================================================================
# MARKERS / FLAGS
# =============================================================================

@dataclass
class Marker:
    entry: MapEntry
    highlighted: bool = False

    @property
    def color(self) -> str:
        return status_color(self.entry.status)

    def move_to(self, entry: MapEntry):
        self.entry = entry

    def to_dict(self, now: datetime) -> dict:
        data = self.entry.to_dict()
        data.update({
            "color": self.color,
            "role_color": role_color(self.entry.role),
            "status_text": STATUS_TEXT.get(self.entry.status, self.entry.status),
            "highlighted": self.highlighted,
            "opacity": 1.0 if self.entry.is_live else 0.5,
            "elapsed_minutes": (
                elapsed_minutes(self.entry.departure_time, now)
                if self.entry.source_type == SourceType.TRACKING else None
            ),
        })
        return data


@dataclass
class Flag:
    event: Event
    latitude: float
    longitude: float
    dragging: bool = False

    def to_dict(self) -> dict:
        data = self.event.to_dict()
        data.update({
            "latitude": self.latitude,
            "longitude": self.longitude,
            "color": flag_color(self.event.event_status),
            "dragging": self.dragging,
        })
        return data


# =============================================================================
# MAP VIEW
# =============================================================================

class MapView:
    def __init__(
        self,
        api=None,
        geocoder=None,
        center: tuple = console_config.MAP_DEFAULT_CENTER,
        zoom: int = console_config.MAP_DEFAULT_ZOOM,
        focus_zoom: int = console_config.MAP_FOCUS_ZOOM,
        follow_debounce: float = console_config.FOLLOW_DEBOUNCE_SECONDS,
        follow_min_move: float = console_config.FOLLOW_MIN_MOVE_METERS,
        flag_min_move: float = console_config.FLAG_MIN_MOVE_METERS,
    ):
        """
        Args:
            api: RemoteAPI (or compatible) used to persist flag relocations
            geocoder: NominatimGeocoder (or compatible) for reverse lookups
        """
        self.api = api
        self.geocoder = geocoder
        self.center = tuple(center)
        self.zoom = zoom
        self.focus_zoom = focus_zoom
        self.follow_debounce = follow_debounce
        self.follow_min_move = follow_min_move
        self.flag_min_move = flag_min_move

        self.markers: Dict[str, Marker] = {}
        self.flags: Dict[str, Flag] = {}
        self.highlighted_volunteer: Optional[str] = None
        self.pending_relocation: Optional[FlagRelocation] = None
        self.rebuild_count = 0

        self._entries: List[MapEntry] = []
        self._followed_at: Optional[tuple] = None
        self._follow_handle: Optional[asyncio.TimerHandle] = None
        self._drag_origins: Dict[str, tuple] = {}

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    @property
    def entries(self) -> List[MapEntry]:
        return list(self._entries)

    def render(self, entries: List[MapEntry]) -> bool:
        """
        Apply a reconciled entry set. Returns True when markers were rebuilt,
        False when the set was structurally equal and markers moved in place.
        """
        rebuilt = not same_structure(self._entries if self.markers else None, entries)
        if rebuilt:
            self.markers = {
                entry.id: Marker(entry, highlighted=entry.volunteer_id == self.highlighted_volunteer)
                for entry in entries
            }
            self.rebuild_count += 1
        else:
            for entry in entries:
                self.markers[entry.id].move_to(entry)
        self._entries = list(entries)

        if self.highlighted_volunteer is not None:
            target = self._entry_for_volunteer(self.highlighted_volunteer)
            if target is None:
                logger.info(f"Volunteer {self.highlighted_volunteer} left the map, clearing highlight")
                self.clear_focus()
            elif target.is_live:
                self._maybe_follow(target)
        return rebuilt

    def _entry_for_volunteer(self, volunteer_id: str) -> Optional[MapEntry]:
        for entry in self._entries:
            if entry.volunteer_id == volunteer_id:
                return entry
        return None

    # -------------------------------------------------------------------------
    # Focus / follow
    # -------------------------------------------------------------------------

    def focus(self, entry_id: str) -> Optional[str]:
        """
        Highlight the entry's volunteer and centre on it. Selecting the
        highlighted volunteer again clears the highlight.

        Returns the highlighted volunteer id, or None when toggled off.
        """
        marker = self.markers.get(entry_id)
        if marker is None:
            raise KeyError(f"Unknown map entry {entry_id}")

        volunteer_id = marker.entry.volunteer_id
        if volunteer_id == self.highlighted_volunteer:
            self.clear_focus()
            return None

        self._cancel_follow()
        self.highlighted_volunteer = volunteer_id
        for m in self.markers.values():
            m.highlighted = m.entry.volunteer_id == volunteer_id
        self.center = (marker.entry.latitude, marker.entry.longitude)
        self.zoom = self.focus_zoom
        self._followed_at = self.center
        logger.debug(f"Focused on volunteer {volunteer_id} at {self.center}")
        return volunteer_id

    def clear_focus(self):
        self._cancel_follow()
        self.highlighted_volunteer = None
        self._followed_at = None
        for marker in self.markers.values():
            marker.highlighted = False

    def _maybe_follow(self, entry: MapEntry):
        target = (entry.latitude, entry.longitude)
        if self._followed_at is not None:
            if haversine_m(self._followed_at[0], self._followed_at[1], target[0], target[1]) < self.follow_min_move:
                return

        self._cancel_follow()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (synchronous caller): nothing to debounce against
            self._apply_follow(entry.volunteer_id, target)
            return
        self._follow_handle = loop.call_later(
            self.follow_debounce, self._apply_follow, entry.volunteer_id, target,
        )

    def _apply_follow(self, volunteer_id: str, target: tuple):
        self._follow_handle = None
        if volunteer_id != self.highlighted_volunteer:
            return
        self.center = target
        self._followed_at = target
        logger.debug(f"Following volunteer {volunteer_id} to {target}")

    def _cancel_follow(self):
        if self._follow_handle is not None:
            self._follow_handle.cancel()
            self._follow_handle = None

    # -------------------------------------------------------------------------
    # Event flags
    # -------------------------------------------------------------------------

    def set_events(self, events: List[Event]):
        """Replace the flag set. A flag with a pending relocation keeps its dragged position."""
        flags = {}
        for event in events:
            if not in_bounds(event.latitude, event.longitude):
                continue
            lat, lng = event.latitude, event.longitude
            pending = self.pending_relocation
            if pending is not None and pending.event_id == event.id:
                lat, lng = pending.new_position
            flags[event.id] = Flag(event=event, latitude=lat, longitude=lng)
        self.flags = flags

    def _require_flag(self, event_id) -> Flag:
        flag = self.flags.get(str(event_id))
        if flag is None:
            raise KeyError(f"No flag for event {event_id}")
        return flag

    def drag_start(self, event_id) -> Flag:
        if self.pending_relocation is not None:
            raise RelocationConflict(
                f"Relocation of event {self.pending_relocation.event_id} is awaiting confirmation"
            )
        flag = self._require_flag(event_id)
        flag.dragging = True
        self._drag_origins[flag.event.id] = (flag.latitude, flag.longitude)
        return flag

    async def drag_end(self, event_id, latitude: float, longitude: float) -> Optional[FlagRelocation]:
        flag = self._require_flag(event_id)
        if self.pending_relocation is not None:
            raise RelocationConflict(
                f"Relocation of event {self.pending_relocation.event_id} is awaiting confirmation"
            )
        origin = self._drag_origins.pop(flag.event.id, (flag.latitude, flag.longitude))
        flag.dragging = False

        if not in_bounds(latitude, longitude):
            flag.latitude, flag.longitude = origin
            raise InvalidCoordinates(latitude, longitude)

        distance = haversine_m(origin[0], origin[1], latitude, longitude)
        if distance < self.flag_min_move:
            flag.latitude, flag.longitude = origin
            logger.debug(f"Flag for event {flag.event.id} moved {distance:.1f}m, below threshold")
            return None

        flag.latitude, flag.longitude = latitude, longitude
        new_address = None
        if self.geocoder is not None:
            new_address = await self.geocoder.coordinates_to_address(latitude, longitude)

        self.pending_relocation = FlagRelocation(
            event_id=flag.event.id,
            original_position=origin,
            new_position=(latitude, longitude),
            original_address=flag.event.full_address,
            new_address=new_address,
            distance_m=distance,
        )
        logger.info(f"Flag for event {flag.event.id} dragged {distance:.0f}m, awaiting confirmation")
        return self.pending_relocation

    async def confirm_relocation(self) -> Event:
        relocation = self.pending_relocation
        if relocation is None:
            raise RelocationConflict("No flag relocation is pending")
        lat, lng = relocation.new_position

        try:
            await self.api.update_event_location(
                relocation.event_id, lat, lng, full_address=relocation.new_address,
            )
        except Exception:
            logger.error(f"Failed to update location for event {relocation.event_id}, reverting flag")
            self._revert(relocation)
            raise

        self.pending_relocation = None
        flag = self.flags.get(relocation.event_id)
        if flag is None:
            # Event left the active set while the dialog was open
            return Event(id=relocation.event_id, latitude=lat, longitude=lng, full_address=relocation.new_address)
        flag.event.latitude = lat
        flag.event.longitude = lng
        if relocation.new_address:
            flag.event.full_address = relocation.new_address
        flag.latitude, flag.longitude = lat, lng
        logger.info(f"Event {relocation.event_id} location updated to ({lat:.6f}, {lng:.6f})")
        return flag.event

    def cancel_relocation(self) -> Optional[FlagRelocation]:
        relocation = self.pending_relocation
        if relocation is None:
            return None
        self._revert(relocation)
        logger.info(f"Relocation of event {relocation.event_id} cancelled")
        return relocation

    def _revert(self, relocation: FlagRelocation):
        self.pending_relocation = None
        flag = self.flags.get(relocation.event_id)
        if flag is not None:
            flag.latitude, flag.longitude = relocation.original_position
            flag.dragging = False

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def snapshot(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        markers = [self.markers[e.id].to_dict(now) for e in self._entries if e.id in self.markers]
        return {
            "center": {"latitude": self.center[0], "longitude": self.center[1]},
            "zoom": self.zoom,
            "highlighted_volunteer": self.highlighted_volunteer,
            "markers": markers,
            "flags": [flag.to_dict() for flag in self.flags.values()],
            "pending_relocation": self.pending_relocation.to_dict() if self.pending_relocation else None,
            "counts": {
                "total": len(self._entries),
                "online": sum(1 for e in self._entries if e.source_type == SourceType.ONLINE and e.is_live),
                "tracking": sum(1 for e in self._entries if e.source_type == SourceType.TRACKING and e.is_live),
                "disconnected": sum(1 for e in self._entries if not e.is_live),
                "events": len(self.flags),
            },
            "generated_at": format_timestamp(now),
        }

    def close(self):
        self._cancel_follow()
        self._drag_origins.clear()
