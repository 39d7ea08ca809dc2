"""
Tracking error taxonomy

    PermissionDenied      geolocation refused; stops continuous tracking
    PositionUnavailable   no fix available; transition aborted, retry allowed
    GeolocationTimeout    no fix within the timeout; transition aborted
    Unsupported           no position source on this device
    InvalidCoordinates    reconciler-internal; entry dropped, never surfaced
    NetworkFailure        any remote call failed; optimistic state reverted
    AuthExpired           401 / forced disconnect; stop tracking, re-login

Controller/map conflicts (TransitionInProgress, InvalidTransition,
RelocationConflict) are raised to the caller and mapped to 409 by routers.
"""

from typing import Optional


class TrackingError(Exception):
    """Base class for all tracking console errors."""


# =============================================================================
# GEOLOCATION
# =============================================================================

class GeolocationError(TrackingError):
    code = "GEOLOCATION_ERROR"


class PermissionDenied(GeolocationError):
    code = "PERMISSION_DENIED"

    def __init__(self, message: str = "Location permission denied"):
        super().__init__(message)


class PositionUnavailable(GeolocationError):
    code = "POSITION_UNAVAILABLE"

    def __init__(self, message: str = "Location information is unavailable"):
        super().__init__(message)


class GeolocationTimeout(GeolocationError):
    code = "TIMEOUT"

    def __init__(self, message: str = "The request to get the location timed out"):
        super().__init__(message)


class Unsupported(GeolocationError):
    code = "UNSUPPORTED"

    def __init__(self, message: str = "Geolocation is not supported"):
        super().__init__(message)


# =============================================================================
# DATA / REMOTE
# =============================================================================

class InvalidCoordinates(TrackingError):
    def __init__(self, latitude, longitude):
        super().__init__(f"Invalid coordinates: ({latitude}, {longitude})")
        self.latitude = latitude
        self.longitude = longitude


class NetworkFailure(TrackingError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExpired(TrackingError):
    def __init__(self, message: str = "Session expired, please log in again"):
        super().__init__(message)


# =============================================================================
# STATE CONFLICTS
# =============================================================================

class TransitionInProgress(TrackingError):
    def __init__(self, assignment_id):
        super().__init__(f"A status update for assignment {assignment_id} is already in progress")
        self.assignment_id = assignment_id


class InvalidTransition(TrackingError):
    def __init__(self, assignment_id, current_status: str, requested_status: str):
        super().__init__(
            f"Assignment {assignment_id} cannot move from '{current_status}' to '{requested_status}'"
        )
        self.assignment_id = assignment_id
        self.current_status = current_status
        self.requested_status = requested_status


class RelocationConflict(TrackingError):
    pass
