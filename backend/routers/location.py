"""
Location Services Router

Endpoints for geocoding addresses and reverse geocoding coordinates.
Any authenticated user may call them; the shared Nominatim client is rate
limited to one request per second per direction.

Endpoints:
    POST /api/location/geocode          - Geocode a raw address string
    POST /api/location/reverse          - Address for a coordinate pair
    GET  /api/location/config           - Map defaults (for frontend)
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Request

import console_config
from jwt_auth import SessionUser, get_current_user
from schemas_tracking import (
    GeocodeRequest, GeocodeResponse, ReverseGeocodeRequest, ReverseGeocodeResponse,
)
from services.location.distance import in_bounds
from services.location.geocoding import NominatimGeocoder

logger = logging.getLogger(__name__)

router = APIRouter()


def get_geocoder(request: Request) -> NominatimGeocoder:
    geocoder = getattr(request.app.state, "geocoder", None)
    if geocoder is None:
        raise HTTPException(status_code=503, detail="Geocoder not available")
    return geocoder


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/geocode", response_model=GeocodeResponse)
async def geocode_address_endpoint(
    request: GeocodeRequest,
    geocoder: NominatimGeocoder = Depends(get_geocoder),
    user: SessionUser = Depends(get_current_user),
):
    """
    Geocode a raw address string.
    Tries local formatting first, then progressively looser queries.
    """
    if not request.address.strip():
        raise HTTPException(status_code=400, detail="Address is required")

    result = await geocoder.address_to_coordinates(request.address, country_code=request.country_code)
    if result:
        return GeocodeResponse(success=True, **result)
    return GeocodeResponse(success=False)


@router.post("/reverse", response_model=ReverseGeocodeResponse)
async def reverse_geocode_endpoint(
    request: ReverseGeocodeRequest,
    geocoder: NominatimGeocoder = Depends(get_geocoder),
    user: SessionUser = Depends(get_current_user),
):
    if not in_bounds(request.latitude, request.longitude):
        raise HTTPException(status_code=400, detail="Invalid coordinates")

    address = await geocoder.coordinates_to_address(request.latitude, request.longitude)
    return ReverseGeocodeResponse(success=address is not None, address=address)


@router.get("/config")
async def get_location_config():
    """Map defaults for the frontend."""
    lat, lng = console_config.MAP_DEFAULT_CENTER
    return {
        "default_center": {"latitude": lat, "longitude": lng},
        "default_zoom": console_config.MAP_DEFAULT_ZOOM,
        "focus_zoom": console_config.MAP_FOCUS_ZOOM,
        "geocoder": "nominatim",
    }
