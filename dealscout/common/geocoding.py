"""
Postal code geocoding and great-circle distance.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol

from .maps_client import GEOCODE_API, GoogleMapsClient, MapsAPIError, get_maps_client

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3959.0
METERS_PER_MILE = 1609.34

# Statuses that mean "no such place", as opposed to a refused or failed call
UNRESOLVABLE_STATUSES = {"ZERO_RESULTS", "INVALID_REQUEST", "NOT_FOUND"}


class GeocodingError(MapsAPIError):
    """The geocoder could not be asked (quota, auth, transport)."""
    pass


@dataclass
class GeoLocation:
    latitude: float
    longitude: float
    city: Optional[str] = None
    region: Optional[str] = None


class Geocoder(Protocol):
    async def resolve(self, postal_code: str) -> Optional[GeoLocation]:
        """Coordinates for a postal code, or None if it cannot be resolved."""
        ...


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in miles."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def miles_to_meters(miles: float) -> float:
    return miles * METERS_PER_MILE


class GoogleGeocoder:
    """Geocoder backed by the Google Geocoding API (results cached by TTL)."""

    def __init__(self, client: Optional[GoogleMapsClient] = None):
        self.client = client or get_maps_client()

    async def resolve(self, postal_code: str) -> Optional[GeoLocation]:
        postal_code = (postal_code or "").strip()
        if not postal_code:
            return None

        try:
            data = await self.client.request(
                GEOCODE_API, {"address": postal_code}, use_cache=True
            )
        except MapsAPIError as e:
            raise GeocodingError(f"Geocoding {postal_code} failed: {e}") from e

        status = data.get("status")
        if status in UNRESOLVABLE_STATUSES:
            logger.warning(f"Geocoding found nothing for {postal_code}: {status}")
            return None
        if status != "OK":
            raise GeocodingError(
                f"Geocoding {postal_code} refused: {status} {data.get('error_message', '')}".strip()
            )

        results = data.get("results") or []
        if not results:
            return None
        location = (results[0].get("geometry") or {}).get("location") or {}
        if location.get("lat") is None or location.get("lng") is None:
            return None

        city = None
        region = None
        for component in results[0].get("address_components", []):
            types = component.get("types", [])
            if "locality" in types:
                city = component.get("long_name")
            if "administrative_area_level_1" in types:
                region = component.get("short_name")

        return GeoLocation(
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            city=city,
            region=region,
        )
