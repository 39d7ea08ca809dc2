"""
Location Services Module

Geocoding and coordinate handling for the tracking console.
Provider: OpenStreetMap Nominatim (free, rate limited to 1 request/second)

Usage:
    from services.location.geocoding import NominatimGeocoder
    from services.location.distance import haversine_m, is_valid_position
"""
