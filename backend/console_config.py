"""
Console configuration

All runtime configuration comes from environment variables. Each section
below groups the settings for one collaborator. Defaults are suitable for
a local development console pointed at a dev backend.

Sections:
    REMOTE API      - assignment / event / location services
    PRESENCE        - real-time presence channel
    GEOCODING       - Nominatim-compatible geocoder
    RECONCILER      - map entry caps and grace period
    POLLING         - active tracking / events refresh cadence
    MAP             - default viewport, follow and drag thresholds
    AUTH            - session token decoding and live-tracking role gate
"""

import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_list(name: str, default: list) -> list:
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


# =============================================================================
# REMOTE API
# =============================================================================

REMOTE_API_URL = os.environ.get("CONSOLE_REMOTE_API_URL", "http://localhost:5000/api")
REMOTE_API_TOKEN = os.environ.get("CONSOLE_REMOTE_API_TOKEN", "")
REMOTE_API_TIMEOUT = _env_float("CONSOLE_REMOTE_API_TIMEOUT", 15.0)

# =============================================================================
# PRESENCE
# =============================================================================

PRESENCE_URL = os.environ.get("CONSOLE_PRESENCE_URL", "ws://localhost:5000/ws/presence")
PRESENCE_ENABLED = os.environ.get("CONSOLE_PRESENCE_ENABLED", "true").lower() in ("true", "1", "yes")

# Identity the console joins the admin room with
CONSOLE_USER_ID = os.environ.get("CONSOLE_USER_ID", "console")
CONSOLE_USER_ROLE = os.environ.get("CONSOLE_USER_ROLE", "מוקדן")
CONSOLE_USERNAME = os.environ.get("CONSOLE_USERNAME", "console")
CONSOLE_FULL_NAME = os.environ.get("CONSOLE_FULL_NAME", "Dispatch Console")

# =============================================================================
# GEOCODING
# =============================================================================

GEOCODER_BASE_URL = os.environ.get("CONSOLE_GEOCODER_URL", "https://nominatim.openstreetmap.org")
GEOCODER_USER_AGENT = os.environ.get("CONSOLE_GEOCODER_USER_AGENT", "ElgarCarTheftSystem/1.0")
GEOCODER_COUNTRY = os.environ.get("CONSOLE_GEOCODER_COUNTRY", "IL")
GEOCODER_LANGUAGE = os.environ.get("CONSOLE_GEOCODER_LANGUAGE", "he,en")
GEOCODER_MIN_INTERVAL = _env_float("CONSOLE_GEOCODER_MIN_INTERVAL", 1.0)  # Nominatim usage policy
GEOCODER_TIMEOUT = _env_float("CONSOLE_GEOCODER_TIMEOUT", 10.0)

# =============================================================================
# RECONCILER
# =============================================================================

MAX_ONLINE_ENTRIES = _env_int("CONSOLE_MAX_ONLINE_ENTRIES", 50)
MAX_STALE_ENTRIES = _env_int("CONSOLE_MAX_STALE_ENTRIES", 20)
MEMORY_GRACE_SECONDS = _env_int("CONSOLE_MEMORY_GRACE_SECONDS", 600)

# =============================================================================
# POLLING
# =============================================================================

# Interval grows with the online roster to bound server load
POLL_INTERVAL_MIN = _env_float("CONSOLE_POLL_INTERVAL_MIN", 120.0)
POLL_INTERVAL_MAX = _env_float("CONSOLE_POLL_INTERVAL_MAX", 180.0)

# =============================================================================
# MAP
# =============================================================================

MAP_DEFAULT_CENTER = (32.0853, 34.7818)  # Tel Aviv
MAP_DEFAULT_ZOOM = 10
MAP_FOCUS_ZOOM = 16
FOLLOW_DEBOUNCE_SECONDS = _env_float("CONSOLE_FOLLOW_DEBOUNCE_SECONDS", 0.5)
FOLLOW_MIN_MOVE_METERS = _env_float("CONSOLE_FOLLOW_MIN_MOVE_METERS", 20.0)
FLAG_MIN_MOVE_METERS = _env_float("CONSOLE_FLAG_MIN_MOVE_METERS", 10.0)

# =============================================================================
# AUTH
# =============================================================================

JWT_SECRET = os.environ.get("CONSOLE_JWT_SECRET", "")
JWT_ALGORITHM = "HS256"

# Command roles allowed to see the live tracking map
LIVE_TRACKING_ROLES = _env_list(
    "CONSOLE_LIVE_TRACKING_ROLES",
    ['מוקדן', 'מפקד משל"ט', 'פיקוד יחידה', 'אדמין', 'מפתח', 'admin'],
)
