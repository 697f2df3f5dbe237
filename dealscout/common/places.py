"""
Dispensary discovery via Google Places Text Search + Place Details.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from .maps_client import (
    PLACE_DETAILS_API,
    PLACES_TEXT_SEARCH_API,
    GoogleMapsClient,
    MapsAPIError,
    get_maps_client,
)
from .url_utils import sanitize_url

logger = logging.getLogger(__name__)

DISCOVERY_QUERY = "cannabis dispensary"
DETAIL_FIELDS = "place_id,name,formatted_address,geometry,formatted_phone_number,website"


class PlacesAPIError(MapsAPIError):
    """Text search failed or was refused."""
    pass


@dataclass
class DiscoveredPlace:
    place_id: Optional[str]
    name: str
    latitude: float
    longitude: float
    address: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None


class SourceDiscovery(Protocol):
    async def search(
        self, latitude: float, longitude: float, radius_meters: float, max_results: int
    ) -> List[DiscoveredPlace]:
        ...


class GooglePlacesDiscovery:
    """Finds dispensaries around a point, enriching each with Place Details."""

    def __init__(self, client: Optional[GoogleMapsClient] = None, query: str = DISCOVERY_QUERY):
        self.client = client or get_maps_client()
        self.query = query

    async def search(
        self, latitude: float, longitude: float, radius_meters: float, max_results: int = 20
    ) -> List[DiscoveredPlace]:
        try:
            data = await self.client.request(PLACES_TEXT_SEARCH_API, {
                "query": self.query,
                "location": f"{latitude},{longitude}",
                "radius": str(round(radius_meters)),
            })
        except MapsAPIError as e:
            raise PlacesAPIError(f"Places search failed: {e}") from e

        status = data.get("status")
        if status == "ZERO_RESULTS":
            return []
        if status and status != "OK":
            raise PlacesAPIError(f"Places search refused: {status} {data.get('error_message', '')}".strip())

        places: List[DiscoveredPlace] = []
        for result in (data.get("results") or [])[:max_results]:
            location = (result.get("geometry") or {}).get("location") or {}
            if location.get("lat") is None or location.get("lng") is None:
                continue
            if not result.get("place_id") or not result.get("name"):
                continue

            details = await self.get_details(result["place_id"])
            places.append(DiscoveredPlace(
                place_id=result["place_id"],
                name=result["name"],
                latitude=float(location["lat"]),
                longitude=float(location["lng"]),
                address=(details or {}).get("formatted_address") or result.get("formatted_address"),
                phone=(details or {}).get("formatted_phone_number") or result.get("formatted_phone_number"),
                website=sanitize_url((details or {}).get("website") or result.get("website")),
            ))

        logger.info(f"Places search at ({latitude:.4f}, {longitude:.4f}) found {len(places)} dispensaries")
        return places

    async def get_details(self, place_id: str) -> Optional[dict]:
        """Place Details for website/phone. Best effort: failures return None."""
        try:
            data = await self.client.request(
                PLACE_DETAILS_API,
                {"place_id": place_id, "fields": DETAIL_FIELDS},
                use_cache=True,
            )
        except MapsAPIError as e:
            logger.warning(f"Place details failed for {place_id}: {e}")
            return None
        if data.get("status") != "OK" or not data.get("result"):
            logger.debug(f"Place details unavailable for {place_id}: {data.get('status')}")
            return None
        return data["result"]
