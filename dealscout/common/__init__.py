"""
Common utilities and shared modules.
"""

from .maps_client import (
    GoogleMapsClient,
    MapsAPIError,
    get_maps_client,
    close_maps_client,
)
from .geocoding import (
    GeoLocation,
    Geocoder,
    GoogleGeocoder,
    GeocodingError,
    haversine_miles,
    miles_to_meters,
)
from .places import (
    DiscoveredPlace,
    SourceDiscovery,
    GooglePlacesDiscovery,
    PlacesAPIError,
)
from .http_client import create_api_client, create_page_client

__all__ = [
    # Maps client
    "GoogleMapsClient",
    "MapsAPIError",
    "get_maps_client",
    "close_maps_client",
    # Geocoding
    "GeoLocation",
    "Geocoder",
    "GoogleGeocoder",
    "GeocodingError",
    "haversine_miles",
    "miles_to_meters",
    # Discovery
    "DiscoveredPlace",
    "SourceDiscovery",
    "GooglePlacesDiscovery",
    "PlacesAPIError",
    # HTTP clients
    "create_api_client",
    "create_page_client",
]
