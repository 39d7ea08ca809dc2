"""
Assignment Status Controller

Forward-only state machine per mission assignment:

    assigned --departure--> departure --arrived--> arrived_at_scene --complete--> task_completed

Each transition is user-initiated on the volunteer's device and runs:

    1. one fresh high-accuracy position fix (failure aborts, status unchanged)
    2. PUT tracking status {status, latitude, longitude, notes}
    3. re-fetch tracking info (timestamps + response-time metrics), notify

Location and status go to the server in a single call, so a transition is
either applied completely or not at all. While a transition is in flight for
an assignment, further requests for that assignment are rejected. Once
task_completed is reached the assignment is no longer offered any action.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from services.tracking.errors import (
    InvalidTransition, NetworkFailure, TransitionInProgress,
)
from services.tracking.geolocation import GeolocationCapture
from services.tracking.models import Assignment, AssignmentStatus, utcnow

logger = logging.getLogger(__name__)

NEXT_STATUS = {
    AssignmentStatus.ASSIGNED: AssignmentStatus.DEPARTURE,
    AssignmentStatus.DEPARTURE: AssignmentStatus.ARRIVED_AT_SCENE,
    AssignmentStatus.ARRIVED_AT_SCENE: AssignmentStatus.TASK_COMPLETED,
}

# Timestamp each target status stamps locally until tracking info arrives
_STATUS_TIMESTAMP = {
    AssignmentStatus.DEPARTURE: "departure_time",
    AssignmentStatus.ARRIVED_AT_SCENE: "arrival_time",
    AssignmentStatus.TASK_COMPLETED: "completion_time",
}


@dataclass(frozen=True)
class StatusAction:
    next_status: str
    label: str
    icon: str
    description: str

    def to_dict(self) -> dict:
        return {
            "next_status": self.next_status,
            "label": self.label,
            "icon": self.icon,
            "description": self.description,
        }


ACTIONS = {
    AssignmentStatus.ASSIGNED: StatusAction(
        AssignmentStatus.DEPARTURE, "יציאה", "🚗", "לחץ כשאתה יוצא למשימה"),
    AssignmentStatus.DEPARTURE: StatusAction(
        AssignmentStatus.ARRIVED_AT_SCENE, "הגעתי למקום", "📍", "לחץ כשהגעת למקום האירוע"),
    AssignmentStatus.ARRIVED_AT_SCENE: StatusAction(
        AssignmentStatus.TASK_COMPLETED, "סיום", "✅", "לחץ כשסיימת את המשימה"),
}

STATUS_LABELS = {
    AssignmentStatus.ASSIGNED: "משימה מוקצית",
    AssignmentStatus.DEPARTURE: "בדרך למקום",
    AssignmentStatus.ARRIVED_AT_SCENE: "במקום האירוע",
    AssignmentStatus.TASK_COMPLETED: "משימה הושלמה",
}


def can_transition(current: str, requested: str) -> bool:
    return NEXT_STATUS.get(current) == requested


class AssignmentStatusController:
    def __init__(self, api, capture: GeolocationCapture):
        self.api = api
        self.capture = capture
        self._assignments: Dict[str, Assignment] = {}
        self._in_flight: set = set()
        self._listeners: List[Callable] = []

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def track(self, assignment: Assignment) -> Assignment:
        self._assignments[assignment.id] = assignment
        return assignment

    def get(self, assignment_id) -> Optional[Assignment]:
        return self._assignments.get(str(assignment_id))

    @property
    def assignments(self) -> List[Assignment]:
        return list(self._assignments.values())

    @property
    def active_assignments(self) -> List[Assignment]:
        return [a for a in self._assignments.values() if not a.is_terminal]

    async def load_for_volunteer(self, volunteer_id) -> List[Assignment]:
        """Fetch the volunteer's assignments and track the ones still open."""
        rows = await self.api.get_volunteer_assignments(volunteer_id)
        loaded = []
        for row in rows:
            assignment = Assignment.from_payload(row) if isinstance(row, dict) else None
            if assignment is None:
                logger.debug(f"Skipping malformed assignment row: {row!r}")
                continue
            if assignment.is_terminal:
                continue
            loaded.append(self.track(assignment))
        logger.info(f"Tracking {len(loaded)} open assignments for volunteer {volunteer_id}")
        return loaded

    async def refresh(self, assignment_id) -> Assignment:
        assignment = self._require(assignment_id)
        info = await self.api.get_tracking_info(assignment.id)
        assignment.apply_tracking_info(info)
        return assignment

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def available_action(self, assignment_id) -> Optional[StatusAction]:
        assignment = self.get(assignment_id)
        if assignment is None or assignment.is_terminal:
            return None
        return ACTIONS.get(assignment.status)

    def is_in_flight(self, assignment_id) -> bool:
        return str(assignment_id) in self._in_flight

    def on_status_update(self, callback: Callable) -> Callable:
        """Register a listener(assignment, result). Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def advance(self, assignment_id, notes: Optional[str] = None) -> Assignment:
        """Apply the next transition in the chain."""
        assignment = self._require(assignment_id)
        next_status = NEXT_STATUS.get(assignment.status)
        if next_status is None:
            raise InvalidTransition(assignment.id, assignment.status, "(none)")
        return await self.transition(assignment.id, next_status, notes=notes)

    async def transition(self, assignment_id, new_status: str, notes: Optional[str] = None) -> Assignment:
        assignment = self._require(assignment_id)
        key = assignment.id

        if key in self._in_flight:
            logger.info(f"Ignoring '{new_status}' for assignment {key}: update already in flight")
            raise TransitionInProgress(key)
        if not can_transition(assignment.status, new_status):
            raise InvalidTransition(key, assignment.status, new_status)

        self._in_flight.add(key)
        try:
            # 1. Position fix - any geolocation error aborts with status unchanged
            reading = await self.capture.capture_for_transition()

            # 2. Status + location, one write
            result = await self.api.update_tracking_status(
                key, new_status, reading.latitude, reading.longitude, notes,
            )

            previous = assignment.status
            assignment.status = new_status
            setattr(assignment, _STATUS_TIMESTAMP[new_status], utcnow())
            assignment.current_latitude = reading.latitude
            assignment.current_longitude = reading.longitude
            if notes is not None:
                assignment.notes = notes
            logger.info(f"Assignment {key}: {previous} -> {new_status}")

            # 3. Timestamps and response-time metrics from the server
            try:
                info = await self.api.get_tracking_info(key)
                assignment.apply_tracking_info(info)
                # The server may lag behind the write we just made
                if assignment.status != new_status:
                    assignment.status = new_status
            except NetworkFailure as e:
                logger.warning(f"Status updated but tracking info refresh failed for assignment {key}: {e}")
                assignment.apply_tracking_info({})
        finally:
            self._in_flight.discard(key)

        self._notify(assignment, result)
        return assignment

    def _notify(self, assignment: Assignment, result):
        for listener in list(self._listeners):
            try:
                listener(assignment, result)
            except Exception as e:
                logger.error(f"Status listener failed: {e}", exc_info=True)

    def _require(self, assignment_id) -> Assignment:
        assignment = self.get(assignment_id)
        if assignment is None:
            raise KeyError(f"Unknown assignment {assignment_id}")
        return assignment
