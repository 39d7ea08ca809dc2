"""Tests for the Nominatim geocoding adapter."""
from unittest.mock import AsyncMock

import httpx
import pytest

from services.location.geocoding import (
    NominatimGeocoder, clean_address, compose_address, format_local_address, transliterate_cities,
)

HIT = [{"lat": "32.0775", "lon": "34.7741", "display_name": "דיזנגוף 50, תל אביב", "importance": 0.62}]


def make_geocoder(handler, clock):
    requests = []

    def record(request: httpx.Request):
        requests.append(request)
        return handler(request)

    sleep = AsyncMock()
    geocoder = NominatimGeocoder(
        base_url="https://nominatim.test",
        transport=httpx.MockTransport(record),
        clock=clock,
        sleep=sleep,
    )
    return geocoder, requests, sleep


class TestAddressFormatting:
    """Local address normalisation helpers"""

    def test_city_first_reordered(self):
        """Known city leading the address moves after the street"""
        assert format_local_address("תל אביב, רחוב דיזנגוף 50") == "דיזנגוף 50, תל אביב"

    def test_unknown_city_untouched(self):
        """Addresses not led by a known city keep their order"""
        assert format_local_address("דיזנגוף 50, תל אביב") == "דיזנגוף 50, תל אביב"

    def test_clean_address(self):
        """Repeated spaces and stray commas are removed"""
        assert clean_address("  הרצל   10 ,, ראשון לציון, ") == "הרצל 10 , ראשון לציון"

    def test_transliterate(self):
        """English city names become Hebrew"""
        assert transliterate_cities("Dizengoff 50, Tel Aviv") == "dizengoff 50, תל אביב"

    def test_compose_address_home_country_omitted(self):
        """Country is left out for home-country results"""
        data = {"address": {"road": "הרצל", "house_number": "10", "city": "תל אביב", "country": "ישראל"}}
        assert compose_address(data) == "הרצל 10, תל אביב"

    def test_compose_address_abroad(self):
        """Foreign results keep the country"""
        data = {"address": {"road": "Main St", "town": "Springfield", "country": "United States"}}
        assert compose_address(data) == "Main St, Springfield, United States"

    def test_compose_address_falls_back_to_display_name(self):
        """No address parts means display_name"""
        assert compose_address({"display_name": "Somewhere"}) == "Somewhere"


class TestForwardGeocoding:
    """address_to_coordinates fallback chain"""

    @pytest.mark.asyncio
    async def test_first_strategy_hit(self, clock):
        """Locally formatted query restricted to the home country"""
        geocoder, requests, _ = make_geocoder(lambda r: httpx.Response(200, json=HIT), clock)
        result = await geocoder.address_to_coordinates("תל אביב, רחוב דיזנגוף 50")

        assert result["latitude"] == 32.0775
        assert result["longitude"] == 34.7741
        assert result["strategy"] == "local_format"
        assert result["provider"] == "nominatim"
        assert result["confidence"] == 0.62
        assert len(requests) == 1
        params = requests[0].url.params
        assert params["q"] == "דיזנגוף 50, תל אביב"
        assert params["countrycodes"] == "il"
        assert params["accept-language"] == "he,en"
        assert requests[0].headers["User-Agent"] == "ElgarCarTheftSystem/1.0"
        await geocoder.aclose()

    @pytest.mark.asyncio
    async def test_falls_back_to_unrestricted_country(self, clock):
        """Country-restricted misses fall through to the global query"""
        def handler(request):
            if "countrycodes" in request.url.params:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=HIT)

        geocoder, requests, _ = make_geocoder(handler, clock)
        result = await geocoder.address_to_coordinates("Dizengoff 50, Tel Aviv")

        assert result["strategy"] == "no_country"
        assert len(requests) == 3
        await geocoder.aclose()

    @pytest.mark.asyncio
    async def test_all_strategies_fail(self, clock):
        """Nothing found returns None after four attempts"""
        geocoder, requests, _ = make_geocoder(lambda r: httpx.Response(200, json=[]), clock)
        assert await geocoder.address_to_coordinates("Nowhere 1, Tel Aviv") is None
        assert len(requests) == 4
        await geocoder.aclose()

    @pytest.mark.asyncio
    async def test_empty_address_makes_no_request(self, clock):
        """Blank input short-circuits"""
        geocoder, requests, _ = make_geocoder(lambda r: httpx.Response(200, json=HIT), clock)
        assert await geocoder.address_to_coordinates("   ") is None
        assert requests == []
        await geocoder.aclose()

    @pytest.mark.asyncio
    async def test_server_error_treated_as_miss(self, clock):
        """HTTP errors never raise to the caller"""
        geocoder, _, _ = make_geocoder(lambda r: httpx.Response(503), clock)
        assert await geocoder.address_to_coordinates("דיזנגוף 50") is None
        await geocoder.aclose()


class TestReverseGeocoding:
    """coordinates_to_address"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lat,lng", [(91, 34.78), (32.08, 200), (float("nan"), 34.78)])
    async def test_invalid_coordinates_make_no_request(self, clock, lat, lng):
        """Bounds are checked before any network call"""
        geocoder, requests, _ = make_geocoder(lambda r: httpx.Response(200, json={}), clock)
        assert await geocoder.coordinates_to_address(lat, lng) is None
        assert requests == []
        await geocoder.aclose()

    @pytest.mark.asyncio
    async def test_composed_address(self, clock):
        """Road, number and city composed from addressdetails"""
        payload = {
            "display_name": "10, הרצל, תל אביב-יפו, ישראל",
            "address": {"road": "הרצל", "house_number": "10", "city": "תל אביב-יפו", "country": "ישראל"},
        }
        geocoder, requests, _ = make_geocoder(lambda r: httpx.Response(200, json=payload), clock)
        assert await geocoder.coordinates_to_address(32.06, 34.77) == "הרצל 10, תל אביב-יפו"
        assert requests[0].url.path == "/reverse"
        await geocoder.aclose()

    @pytest.mark.asyncio
    async def test_no_result(self, clock):
        """An error payload yields None"""
        geocoder, _, _ = make_geocoder(lambda r: httpx.Response(200, json={"error": "Unable to geocode"}), clock)
        assert await geocoder.coordinates_to_address(32.06, 34.77) is None
        await geocoder.aclose()


class TestRateLimiting:
    """One request per second per direction"""

    @pytest.mark.asyncio
    async def test_back_to_back_reverse_calls_wait(self, clock):
        """The second reverse call inside one second sleeps for the remainder"""
        payload = {"display_name": "x", "address": {"road": "הרצל"}}
        geocoder, _, sleep = make_geocoder(lambda r: httpx.Response(200, json=payload), clock)
        await geocoder.coordinates_to_address(32.06, 34.77)
        clock.advance(0.25)
        await geocoder.coordinates_to_address(32.06, 34.77)

        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(0.75)
        await geocoder.aclose()

    @pytest.mark.asyncio
    async def test_search_and_reverse_limited_independently(self, clock):
        """A search does not delay a following reverse lookup"""
        def handler(request):
            if request.url.path == "/search":
                return httpx.Response(200, json=HIT)
            return httpx.Response(200, json={"display_name": "x", "address": {"road": "הרצל"}})

        geocoder, _, sleep = make_geocoder(handler, clock)
        await geocoder.address_to_coordinates("דיזנגוף 50")
        await geocoder.coordinates_to_address(32.06, 34.77)
        sleep.assert_not_awaited()
        await geocoder.aclose()
