"""
Geocoding Service for Location Services

Provider: OpenStreetMap Nominatim (free, no API key, 1 request/second policy)

Forward strategy (address -> coordinates), first hit wins:
    1. Local formatting: drop the "רחוב" prefix, reorder "City, Street" to
       "Street, City" for known cities, restricted to the home country
    2. Cleaned generic form (collapsed spaces, stray commas), home country
    3. Same address with no country restriction
    4. English city names transliterated to Hebrew, home country
    5. All failed -> None

Reverse (coordinates -> address):
    Bounds checked before any request. Result composed as
    "Road HouseNumber, City[, Country]" (country omitted at home), falling
    back to Nominatim's display_name.

Search and reverse requests are rate limited independently, each to one
request per second. Every request carries a custom User-Agent as the
Nominatim usage policy requires.
"""

import asyncio
import logging
import re
import time
from typing import Callable, Optional

import httpx

import console_config
from services.location.distance import in_bounds

logger = logging.getLogger(__name__)

HOME_COUNTRY_NAMES = ('ישראל', 'Israel')

# Cities whose name commonly leads the address ("תל אביב, דיזנגוף 50")
LOCAL_CITIES = [
    'תל אביב', 'ירושלים', 'חיפה', 'באר שבע', 'פתח תקווה', 'נתניה',
    'הרצליה', 'רמת גן', 'בני ברק', 'גבעתיים', 'כפר סבא', 'רעננה',
]

CITY_TRANSLITERATIONS = {
    'tel aviv': 'תל אביב',
    'jerusalem': 'ירושלים',
    'haifa': 'חיפה',
    'beer sheva': 'באר שבע',
    'petah tikva': 'פתח תקווה',
    'netanya': 'נתניה',
    'herzliya': 'הרצליה',
    'ramat gan': 'רמת גן',
    'bnei brak': 'בני ברק',
    'givat shmuel': 'גבעת שמואל',
    'kfar saba': 'כפר סבא',
    'raanana': 'רעננה',
}


class RateLimiter:
    """Spaces calls at least min_interval seconds apart."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self):
        async with self._lock:
            if self._last is not None:
                elapsed = self._clock() - self._last
                if elapsed < self.min_interval:
                    await self._sleep(self.min_interval - elapsed)
            self._last = self._clock()


# =============================================================================
# ADDRESS FORMATTING
# =============================================================================

def format_local_address(address: str) -> str:
    """Drop the street prefix and put the street before a leading known city."""
    if not address:
        return ''
    formatted = re.sub(r'רחוב\s+', '', address.strip())
    formatted = re.sub(r'\s+', ' ', formatted)

    parts = [p.strip() for p in formatted.split(',')]
    if len(parts) >= 2:
        possible_city = parts[0]
        if any(city in possible_city for city in LOCAL_CITIES):
            formatted = ' '.join(parts[1:]) + ', ' + possible_city
    return formatted


def clean_address(address: str) -> str:
    if not address:
        return ''
    cleaned = re.sub(r'\s+', ' ', address.strip())
    cleaned = re.sub(r',\s*,', ',', cleaned)
    return re.sub(r'^,|,$', '', cleaned).strip()


def transliterate_cities(address: str) -> str:
    if not address:
        return ''
    transformed = address.lower()
    for english, hebrew in CITY_TRANSLITERATIONS.items():
        transformed = re.sub(re.escape(english), hebrew, transformed, flags=re.IGNORECASE)
    return transformed


def compose_address(data: dict) -> Optional[str]:
    """Build "Road Number, City[, Country]" from a Nominatim reverse payload."""
    address = data.get("address") or {}
    parts = []

    road = address.get("road")
    if road and address.get("house_number"):
        parts.append(f"{road} {address['house_number']}")
    elif road:
        parts.append(road)

    city = address.get("city") or address.get("town") or address.get("village")
    if city:
        parts.append(city)

    country = address.get("country")
    if country and country not in HOME_COUNTRY_NAMES:
        parts.append(country)

    return ', '.join(parts) or data.get("display_name")


# =============================================================================
# GEOCODER
# =============================================================================

class NominatimGeocoder:
    def __init__(
        self,
        base_url: str = console_config.GEOCODER_BASE_URL,
        user_agent: str = console_config.GEOCODER_USER_AGENT,
        country_code: str = console_config.GEOCODER_COUNTRY,
        language: str = console_config.GEOCODER_LANGUAGE,
        min_interval: float = console_config.GEOCODER_MIN_INTERVAL,
        timeout: float = console_config.GEOCODER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep,
    ):
        self.country_code = country_code
        self.language = language
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            headers={"User-Agent": user_agent},
            timeout=timeout,
            transport=transport,
        )
        self._search_limiter = RateLimiter(min_interval, clock=clock, sleep=sleep)
        self._reverse_limiter = RateLimiter(min_interval, clock=clock, sleep=sleep)

    async def aclose(self):
        await self._client.aclose()

    async def address_to_coordinates(self, address: str, country_code: Optional[str] = None) -> Optional[dict]:
        """
        Geocode an address with the fallback chain described above.

        Returns dict with:
            latitude, longitude, display_name, confidence, strategy, provider
        or None if every strategy fails.
        """
        if not address or not address.strip():
            return None
        country = country_code or self.country_code

        strategies = [
            ("local_format", format_local_address(address), country),
            ("cleaned", clean_address(address), country),
            ("no_country", address, None),
            ("transliterated", transliterate_cities(address), self.country_code),
        ]
        for strategy, query, query_country in strategies:
            if not query:
                continue
            result = await self._search(query, query_country)
            if result:
                result["strategy"] = strategy
                logger.info(
                    f"Nominatim: '{address}' -> ({result['latitude']}, {result['longitude']}) via {strategy}"
                )
                return result
            logger.debug(f"Nominatim: no match for '{query}' ({query_country or 'global'})")

        logger.warning(f"Geocoding failed for: {address}")
        return None

    async def coordinates_to_address(self, latitude: float, longitude: float) -> Optional[str]:
        """Reverse geocode. Invalid coordinates return None without a request."""
        if not in_bounds(latitude, longitude):
            logger.warning(f"Invalid coordinates for reverse geocoding: ({latitude}, {longitude})")
            return None

        await self._reverse_limiter.wait()
        params = {
            "lat": latitude,
            "lon": longitude,
            "format": "json",
            "addressdetails": "1",
            "accept-language": self.language,
        }
        data = await self._get("/reverse", params, f"reverse ({latitude}, {longitude})")
        if not isinstance(data, dict) or not data.get("display_name"):
            logger.info(f"Nominatim: no reverse result for ({latitude}, {longitude})")
            return None

        address = compose_address(data)
        logger.info(f"Nominatim: ({latitude}, {longitude}) -> '{address}'")
        return address

    async def _search(self, query: str, country_code: Optional[str]) -> Optional[dict]:
        await self._search_limiter.wait()
        params = {
            "q": query,
            "format": "json",
            "addressdetails": "1",
            "limit": "3",
            "accept-language": self.language,
        }
        if country_code:
            params["countrycodes"] = country_code.lower()

        data = await self._get("/search", params, f"'{query}'")
        if not data or not isinstance(data, list):
            return None

        best = data[0]
        try:
            return {
                "latitude": float(best["lat"]),
                "longitude": float(best["lon"]),
                "display_name": best.get("display_name", ""),
                "confidence": best.get("importance", 0.5),
                "provider": "nominatim",
            }
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Nominatim: malformed result for '{query}': {e}")
            return None

    async def _get(self, path: str, params: dict, label: str):
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException:
            logger.warning(f"Nominatim timeout for {label}")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Nominatim error for {label}: {e}")
            return None
