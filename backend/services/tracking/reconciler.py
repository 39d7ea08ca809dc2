"""
Presence / Tracking Reconciler

Merges three independently-arriving sources into one list of map entries:

    1. the presence roster (online-users-updated, full snapshot each time)
    2. active mission tracking (polled from the assignment service)
    3. short-term memory of recently seen positions

Rules, applied on every recompute:
    - A volunteer on an active mission is shown from tracking data only.
      Tracking rows carry mission context and fresher GPS, so an "online"
      snapshot for the same volunteer is never emitted.
    - Online entries are capped (default 50). Candidates are ordered most
      recently updated first, then by id, so the cut is deterministic.
    - Tracking entries are never capped.
    - Volunteers missing from both sources but seen within the grace period
      (default 10 minutes) are re-emitted from memory as
      temporarily_disconnected / is_live=False, capped (default 20) with the
      most recently seen kept.
    - Memory is refreshed from live entries only, then expired entries are
      evicted.
    - Coordinates must be finite, in bounds and non-zero. Invalid rows are
      dropped silently; one bad row never aborts a cycle.

Either source may update first; each recompute works only from the latest
roster snapshot and the latest tracking list it is handed.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

import console_config
from services.location.distance import is_valid_position
from services.tracking.memory import ShortTermMemory
from services.tracking.models import (
    MapEntry, OnlineUser, TrackingRecord, EntryStatus, SourceType, utcnow,
)

logger = logging.getLogger(__name__)

_SOURCE_PRIORITY = {SourceType.TRACKING: 2, SourceType.ONLINE: 1}


# =============================================================================
# PAYLOAD PARSING
# =============================================================================

def parse_roster(payloads: Iterable) -> List[OnlineUser]:
    """Parse a roster snapshot, skipping malformed rows."""
    users = []
    for row in payloads or []:
        if isinstance(row, OnlineUser):
            users.append(row)
            continue
        if not isinstance(row, dict):
            logger.debug(f"Skipping malformed roster row: {row!r}")
            continue
        user = OnlineUser.from_payload(row)
        if user is None:
            logger.debug(f"Skipping roster row without id: {row!r}")
            continue
        users.append(user)
    return users


def parse_tracking(payloads: Iterable) -> List[TrackingRecord]:
    """Parse an active-tracking list, skipping malformed rows."""
    records = []
    for row in payloads or []:
        if isinstance(row, TrackingRecord):
            records.append(row)
            continue
        if not isinstance(row, dict):
            logger.debug(f"Skipping malformed tracking row: {row!r}")
            continue
        record = TrackingRecord.from_payload(row)
        if record is None:
            logger.debug(f"Skipping tracking row without assignment/volunteer id: {row!r}")
            continue
        records.append(record)
    return records


def same_structure(previous: Optional[List[MapEntry]], current: List[MapEntry]) -> bool:
    """True when both lists have the same length and the same set of entry ids."""
    if previous is None:
        return False
    if len(previous) != len(current):
        return False
    return {e.id for e in previous} == {e.id for e in current}


# =============================================================================
# RECONCILER
# =============================================================================

@dataclass
class ReconcileResult:
    entries: List[MapEntry]
    changed: bool
    online_count: int = 0
    tracking_count: int = 0
    stale_count: int = 0
    dropped_invalid: int = 0
    computed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "changed": self.changed,
            "online_count": self.online_count,
            "tracking_count": self.tracking_count,
            "stale_count": self.stale_count,
            "dropped_invalid": self.dropped_invalid,
            "computed_at": self.computed_at.isoformat(),
        }


class PresenceReconciler:
    def __init__(
        self,
        max_online: int = console_config.MAX_ONLINE_ENTRIES,
        max_stale: int = console_config.MAX_STALE_ENTRIES,
        grace: timedelta = timedelta(seconds=console_config.MEMORY_GRACE_SECONDS),
        memory: Optional[ShortTermMemory] = None,
    ):
        self.max_online = max_online
        self.max_stale = max_stale
        self.memory = memory if memory is not None else ShortTermMemory(grace=grace)
        self.last_result: Optional[ReconcileResult] = None

    @property
    def entries(self) -> List[MapEntry]:
        return self.last_result.entries if self.last_result else []

    def recompute(
        self,
        online_users: List[OnlineUser],
        active_tracking: List[TrackingRecord],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        now = now or utcnow()
        dropped = 0

        # 1. Volunteers currently on a mission
        tracking = self._select_tracking(active_tracking)
        tracking_ids = {record.volunteer_id for record in tracking}

        # 2. Online entries for everyone else, capped
        online_entries = []
        emitted_online = set()
        for user in self._order_online(online_users):
            if len(online_entries) >= self.max_online:
                break
            if user.id in tracking_ids or user.id in emitted_online:
                continue
            entry = self._online_entry(user, now)
            if entry is None:
                dropped += 1
                continue
            emitted_online.add(user.id)
            online_entries.append(entry)

        # 3. Tracking entries, uncapped
        tracking_entries = []
        for record in tracking:
            entry = self._tracking_entry(record, now)
            if entry is None:
                dropped += 1
                continue
            tracking_entries.append(entry)

        # 4. Recently seen volunteers absent from both sources
        current_ids = {user.id for user in online_users} | tracking_ids
        stale_entries = [
            replace(entry, is_live=False, status=EntryStatus.TEMPORARILY_DISCONNECTED)
            for entry in self.memory.recall_absent(current_ids, now)[:self.max_stale]
        ]

        # 5. Refresh memory from live data only, then expire
        self.memory.remember(online_entries + tracking_entries)
        evicted = self.memory.evict(now)
        if evicted:
            logger.debug(f"Evicted {evicted} expired positions from short-term memory")

        entries = _dedupe_by_volunteer(online_entries + tracking_entries + stale_entries)

        # 6. Structural change check for consumers
        previous = self.last_result.entries if self.last_result else None
        result = ReconcileResult(
            entries=entries,
            changed=not same_structure(previous, entries),
            online_count=len(online_entries),
            tracking_count=len(tracking_entries),
            stale_count=len(stale_entries),
            dropped_invalid=dropped,
            computed_at=now,
        )
        self.last_result = result

        if dropped:
            logger.debug(f"Reconcile dropped {dropped} rows with invalid coordinates")
        logger.debug(
            f"Reconciled {len(entries)} entries "
            f"(online={result.online_count}, tracking={result.tracking_count}, "
            f"stale={result.stale_count}, changed={result.changed})"
        )
        return result

    def reset(self):
        self.memory.clear()
        self.last_result = None

    # -------------------------------------------------------------------------
    # Source selection
    # -------------------------------------------------------------------------

    @staticmethod
    def _order_online(online_users: List[OnlineUser]) -> List[OnlineUser]:
        """Most recently updated first; users without a timestamp last; then by id."""
        def key(user: OnlineUser):
            ts = user.last_location_update
            return (ts is None, -ts.timestamp() if ts else 0.0, user.id)
        return sorted(online_users, key=key)

    @staticmethod
    def _select_tracking(active_tracking: List[TrackingRecord]) -> List[TrackingRecord]:
        """
        Drop terminal rows and keep one row per volunteer: the most recently
        updated assignment, later rows winning ties.
        """
        chosen = {}
        for record in active_tracking:
            if record.is_terminal:
                continue
            current = chosen.get(record.volunteer_id)
            if current is None:
                chosen[record.volunteer_id] = record
                continue
            current_ts = current.updated_at.timestamp() if current.updated_at else float('-inf')
            record_ts = record.updated_at.timestamp() if record.updated_at else float('-inf')
            if record_ts >= current_ts:
                chosen[record.volunteer_id] = record
        return list(chosen.values())

    # -------------------------------------------------------------------------
    # Entry builders
    # -------------------------------------------------------------------------

    @staticmethod
    def _online_entry(user: OnlineUser, now: datetime) -> Optional[MapEntry]:
        if not is_valid_position(user.last_latitude, user.last_longitude):
            return None
        return MapEntry(
            id=f"online_{user.id}",
            volunteer_id=user.id,
            name=user.display_name,
            role=user.role,
            phone=user.phone_number,
            photo_url=user.photo_url,
            latitude=user.last_latitude,
            longitude=user.last_longitude,
            status=EntryStatus.ONLINE,
            source_type=SourceType.ONLINE,
            is_live=True,
            last_seen=now,
            has_car=user.has_car,
            car_type=user.car_type,
            license_plate=user.license_plate,
            car_color=user.car_color,
        )

    @staticmethod
    def _tracking_entry(record: TrackingRecord, now: datetime) -> Optional[MapEntry]:
        if not is_valid_position(record.current_latitude, record.current_longitude):
            return None
        volunteer = record.volunteer or {}
        return MapEntry(
            id=f"tracking_{record.assignment_id}",
            volunteer_id=record.volunteer_id,
            name=volunteer.get("full_name") or volunteer.get("username") or "מתנדב",
            role=volunteer.get("role"),
            phone=volunteer.get("phone_number"),
            photo_url=volunteer.get("photo_url"),
            latitude=record.current_latitude,
            longitude=record.current_longitude,
            status=record.status,
            source_type=SourceType.TRACKING,
            is_live=True,
            last_seen=now,
            event=record.event,
            departure_time=record.departure_time,
            arrival_time=record.arrival_time,
            has_car=bool(volunteer.get("has_car")),
            car_type=volunteer.get("car_type"),
            license_plate=volunteer.get("license_plate"),
            car_color=volunteer.get("car_color"),
        )


def _dedupe_by_volunteer(entries: List[MapEntry]) -> List[MapEntry]:
    """One entry per volunteer: live beats stale, tracking beats online. Order preserved."""
    best = {}
    for index, entry in enumerate(entries):
        rank = (entry.is_live, _SOURCE_PRIORITY.get(entry.source_type, 0))
        current = best.get(entry.volunteer_id)
        if current is None or rank > current[0]:
            best[entry.volunteer_id] = (rank, index)
    keep = {index for _, index in best.values()}
    return [entry for index, entry in enumerate(entries) if index in keep]
