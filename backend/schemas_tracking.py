"""
Pydantic Schemas for the live tracking console
Covers: focus, flag relocation, geocoding, and the map snapshot payload.

Organized by domain area matching the API endpoint groups.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


# =============================================================================
# FOCUS
# =============================================================================

class FocusRequest(BaseModel):
    entry_id: str


class FocusResponse(BaseModel):
    highlighted_volunteer: Optional[str] = None
    center: Dict[str, float]
    zoom: int


# =============================================================================
# FLAG RELOCATION
# =============================================================================

class FlagDragEnd(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Position(BaseModel):
    latitude: float
    longitude: float


class FlagRelocationResponse(BaseModel):
    """Pending relocation awaiting dispatcher confirmation"""
    event_id: str
    original_position: Position
    new_position: Position
    original_address: Optional[str] = None
    new_address: Optional[str] = None
    distance_m: float


class DragEndResponse(BaseModel):
    pending: bool
    relocation: Optional[FlagRelocationResponse] = None


class EventResponse(BaseModel):
    id: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    title: Optional[str] = None
    full_address: Optional[str] = None
    event_status: Optional[str] = None
    license_plate: Optional[str] = None
    car_model: Optional[str] = None
    car_color: Optional[str] = None


# =============================================================================
# GEOCODING
# =============================================================================

class GeocodeRequest(BaseModel):
    address: str
    country_code: Optional[str] = None


class GeocodeResponse(BaseModel):
    success: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    display_name: Optional[str] = None
    confidence: Optional[float] = None
    provider: Optional[str] = None
    strategy: Optional[str] = None


class ReverseGeocodeRequest(BaseModel):
    latitude: float
    longitude: float


class ReverseGeocodeResponse(BaseModel):
    success: bool
    address: Optional[str] = None


# =============================================================================
# MAP SNAPSHOT
# =============================================================================

class MapCounts(BaseModel):
    total: int
    online: int
    tracking: int
    disconnected: int
    events: int


class MapSnapshot(BaseModel):
    center: Dict[str, float]
    zoom: int
    highlighted_volunteer: Optional[str] = None
    markers: List[Dict[str, Any]]
    flags: List[Dict[str, Any]]
    pending_relocation: Optional[FlagRelocationResponse] = None
    counts: MapCounts
    generated_at: Optional[str] = None


class RefreshResponse(BaseModel):
    entries: int
    online_count: int
    tracking_count: int
    stale_count: int
    changed: bool
