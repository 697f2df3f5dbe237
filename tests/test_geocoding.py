"""Tests for the Google Maps client, geocoder and place discovery."""

import httpx
import pytest

from dealscout.common.geocoding import GeocodingError, GoogleGeocoder, haversine_miles, miles_to_meters
from dealscout.common.maps_client import GoogleMapsClient, MapsAPIError, TTLCache
from dealscout.common.places import GooglePlacesDiscovery, PlacesAPIError

DETROIT_GEOCODE = {
    "status": "OK",
    "results": [{
        "geometry": {"location": {"lat": 42.3314, "lng": -83.0458}},
        "address_components": [
            {"long_name": "Detroit", "short_name": "Detroit", "types": ["locality", "political"]},
            {"long_name": "Michigan", "short_name": "MI", "types": ["administrative_area_level_1"]},
        ],
    }],
}


def maps_client(handler, api_key="test-key") -> GoogleMapsClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleMapsClient(api_key=api_key, http_client=http_client, cache=TTLCache(ttl_seconds=60))


class TestDistance:
    def test_haversine_known_distance(self):
        # Detroit to Ann Arbor is roughly 36 miles
        assert haversine_miles(42.3314, -83.0458, 42.2808, -83.7430) == pytest.approx(35.8, abs=1.0)

    def test_zero_distance(self):
        assert haversine_miles(42.0, -83.0, 42.0, -83.0) == 0.0

    def test_miles_to_meters(self):
        assert miles_to_meters(25) == pytest.approx(40233.5)


class TestGeocoder:
    @pytest.mark.asyncio
    async def test_resolves_postal_code(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json=DETROIT_GEOCODE)

        location = await GoogleGeocoder(maps_client(handler)).resolve("48201")

        assert location.latitude == pytest.approx(42.3314)
        assert location.city == "Detroit"
        assert location.region == "MI"
        assert seen[0]["address"] == "48201"
        assert seen[0]["key"] == "test-key"

    @pytest.mark.asyncio
    async def test_results_are_cached(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(200, json=DETROIT_GEOCODE)

        geocoder = GoogleGeocoder(maps_client(handler))
        await geocoder.resolve("48201")
        await geocoder.resolve("48201")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_zero_results_is_none(self):
        geocoder = GoogleGeocoder(maps_client(
            lambda request: httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})
        ))
        assert await geocoder.resolve("00000") is None

    @pytest.mark.asyncio
    async def test_blank_postal_code_is_none(self):
        def handler(request):
            raise AssertionError("should not call the API")

        assert await GoogleGeocoder(maps_client(handler)).resolve("  ") is None

    @pytest.mark.asyncio
    async def test_denied_raises(self):
        geocoder = GoogleGeocoder(maps_client(
            lambda request: httpx.Response(
                200, json={"status": "REQUEST_DENIED", "error_message": "bad key"}
            )
        ))
        with pytest.raises(GeocodingError, match="REQUEST_DENIED"):
            await geocoder.resolve("48201")

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(403)

        with pytest.raises(GeocodingError):
            await GoogleGeocoder(maps_client(handler)).resolve("48201")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        client = maps_client(lambda request: httpx.Response(200, json=DETROIT_GEOCODE), api_key="")
        with pytest.raises(MapsAPIError):
            await client.request("https://maps.example/geocode", {"address": "48201"})


class TestPlacesDiscovery:
    @pytest.mark.asyncio
    async def test_search_enriches_with_details(self):
        def handler(request):
            if request.url.path.endswith("/textsearch/json"):
                assert request.url.params["radius"] == "40234"
                return httpx.Response(200, json={
                    "status": "OK",
                    "results": [
                        {
                            "place_id": "abc",
                            "name": "Green Leaf Detroit",
                            "geometry": {"location": {"lat": 42.34, "lng": -83.05}},
                            "formatted_address": "1 Woodward Ave",
                        },
                        {"place_id": "no-geometry", "name": "Ghost"},
                    ],
                })
            return httpx.Response(200, json={
                "status": "OK",
                "result": {"website": "www.greenleaf.example", "formatted_phone_number": "(313) 555-0100"},
            })

        places = await GooglePlacesDiscovery(maps_client(handler)).search(
            42.3314, -83.0458, miles_to_meters(25), 20
        )

        assert len(places) == 1
        assert places[0].place_id == "abc"
        assert places[0].website == "https://www.greenleaf.example"
        assert places[0].phone == "(313) 555-0100"
        assert places[0].address == "1 Woodward Ave"

    @pytest.mark.asyncio
    async def test_zero_results(self):
        discovery = GooglePlacesDiscovery(maps_client(
            lambda request: httpx.Response(200, json={"status": "ZERO_RESULTS"})
        ))
        assert await discovery.search(42.0, -83.0, 1000, 20) == []

    @pytest.mark.asyncio
    async def test_refused_search_raises(self):
        discovery = GooglePlacesDiscovery(maps_client(
            lambda request: httpx.Response(200, json={"status": "OVER_QUERY_LIMIT"})
        ))
        with pytest.raises(PlacesAPIError):
            await discovery.search(42.0, -83.0, 1000, 20)
