"""
Short-term position memory

Keeps the most recent validated MapEntry per volunteer so that a volunteer
who drops off the roster for a few minutes (phone asleep, tunnel, app in
background) stays on the map as "temporarily disconnected" instead of
flickering away.

Owned by the reconciler and only mutated inside its recompute step.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from services.tracking.models import MapEntry

DEFAULT_GRACE = timedelta(minutes=10)


class ShortTermMemory:
    def __init__(self, grace: timedelta = DEFAULT_GRACE):
        self.grace = grace
        self._entries: Dict[str, MapEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, volunteer_id: str) -> bool:
        return volunteer_id in self._entries

    def get(self, volunteer_id: str) -> Optional[MapEntry]:
        return self._entries.get(volunteer_id)

    def is_fresh(self, entry: MapEntry, now: datetime) -> bool:
        return now - entry.last_seen <= self.grace

    def remember(self, entries: Iterable[MapEntry]):
        """Upsert live entries. Stale copies must never be written back."""
        for entry in entries:
            if not entry.is_live:
                continue
            self._entries[entry.volunteer_id] = entry

    def evict(self, now: datetime) -> int:
        expired = [vid for vid, entry in self._entries.items() if not self.is_fresh(entry, now)]
        for vid in expired:
            del self._entries[vid]
        return len(expired)

    def recall_absent(self, present_ids: set, now: datetime) -> List[MapEntry]:
        """
        Entries for volunteers not in present_ids and still inside the grace
        window, most recently seen first.
        """
        recalled = [
            entry for vid, entry in self._entries.items()
            if vid not in present_ids and self.is_fresh(entry, now)
        ]
        recalled.sort(key=lambda e: (e.last_seen, e.volunteer_id), reverse=True)
        return recalled

    def clear(self):
        self._entries.clear()
