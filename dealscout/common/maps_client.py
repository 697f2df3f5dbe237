"""
Shared Google Maps Platform API client.

Provides a reusable HTTP client with:
- Exponential backoff retry logic
- Rate limit (HTTP 429) handling
- TTL caching for geocode lookups

Used by:
- geocoding.py (postal code -> coordinates)
- places.py (dispensary discovery)
"""

import asyncio
import hashlib
import logging
import random
from time import time
from typing import Any, Dict, Optional, Tuple

import httpx

from ..config.settings import settings
from .http_client import create_api_client

logger = logging.getLogger(__name__)

GEOCODE_API = "https://maps.googleapis.com/maps/api/geocode/json"
PLACES_TEXT_SEARCH_API = "https://maps.googleapis.com/maps/api/place/textsearch/json"
PLACE_DETAILS_API = "https://maps.googleapis.com/maps/api/place/details/json"


class MapsAPIError(Exception):
    """Raised when the Maps API cannot be reached or refuses the request."""
    pass


class TTLCache:
    """Small TTL cache keyed by endpoint + params. Async-safe."""

    CLEANUP_INTERVAL = 100

    def __init__(self, ttl_seconds: int = 3600):
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._ttl = ttl_seconds
        self._operations_since_cleanup = 0
        self._lock = asyncio.Lock()

    @staticmethod
    def make_key(url: str, params: Dict[str, Any]) -> str:
        items = sorted((k, str(v)) for k, v in params.items() if k != "key")
        return hashlib.md5(f"{url}:{items}".encode()).hexdigest()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if key in self._cache:
                timestamp, value = self._cache[key]
                if time() - timestamp < self._ttl:
                    return value
                del self._cache[key]
            return None

    async def set(self, key: str, value: Any):
        async with self._lock:
            self._cache[key] = (time(), value)
            self._operations_since_cleanup += 1
            if self._operations_since_cleanup >= self.CLEANUP_INTERVAL:
                self._cleanup_locked()
                self._operations_since_cleanup = 0

    def _cleanup_locked(self) -> int:
        now = time()
        expired_keys = [k for k, (ts, _) in self._cache.items() if now - ts >= self._ttl]
        for k in expired_keys:
            del self._cache[k]
        if expired_keys:
            logger.debug(f"Cache cleanup: removed {len(expired_keys)} expired entries, size={len(self._cache)}")
        return len(expired_keys)


class GoogleMapsClient:
    """
    Async HTTP client for the Google Maps web service APIs.

    Features:
    - Exponential backoff retry on timeouts, network errors and 5xx
    - HTTP 429 handling with Retry-After
    - Optional TTL caching per request
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.api_key = settings.google_maps_api_key if api_key is None else api_key
        self.timeout = settings.request_timeout
        self.max_retries = settings.maps_max_retries
        self.backoff_base = settings.maps_backoff_base
        self.cache = cache or TTLCache(ttl_seconds=settings.geocode_cache_ttl)
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = create_api_client(self.timeout)
            self._owns_client = True
        return self._client

    async def close(self):
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def has_api_key(self) -> bool:
        if not self.api_key:
            logger.error("GOOGLE_MAPS_API_KEY not configured")
            return False
        return True

    async def request(
        self,
        url: str,
        params: Dict[str, Any],
        use_cache: bool = False,
    ) -> Dict[str, Any]:
        """
        GET a Maps endpoint with exponential backoff retry.

        Returns the decoded JSON body. The API's own "status" field is left
        for the caller to interpret.

        Raises:
            MapsAPIError: no key configured, a 4xx response, an undecodable
                body, or retries exhausted.
        """
        if not self.has_api_key():
            raise MapsAPIError("GOOGLE_MAPS_API_KEY not configured")

        cache_key = TTLCache.make_key(url, params)
        if use_cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Maps cache hit: {url}")
                return cached

        client = await self._get_client()
        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = await client.get(url, params={**params, "key": self.api_key})

                if response.status_code == 429:
                    retry_after_header = response.headers.get("Retry-After", "10")
                    try:
                        retry_after = int(retry_after_header)
                    except ValueError:
                        logger.warning(f"Non-numeric Retry-After header: {retry_after_header}")
                        retry_after = 10
                    logger.warning(
                        f"Maps API rate limited. Waiting {retry_after}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    last_error = "rate limited"
                    await asyncio.sleep(retry_after)
                    continue

                if response.status_code >= 500:
                    backoff = (self.backoff_base ** attempt) * random.uniform(0.9, 1.1)
                    logger.warning(
                        f"Maps API server error {response.status_code}. "
                        f"Retrying in {backoff:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    last_error = f"HTTP {response.status_code}"
                    await asyncio.sleep(backoff)
                    continue

                response.raise_for_status()

                try:
                    data = response.json()
                except ValueError as e:
                    raise MapsAPIError(f"Maps API returned invalid JSON: {e}") from e

                if use_cache:
                    await self.cache.set(cache_key, data)
                return data

            except httpx.TimeoutException:
                backoff = (self.backoff_base ** attempt) * random.uniform(0.9, 1.1)
                logger.warning(
                    f"Maps API timeout. Retrying in {backoff:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                last_error = "timeout"
                await asyncio.sleep(backoff)

            except httpx.HTTPStatusError as e:
                # 4xx other than 429: retrying will not help
                raise MapsAPIError(f"Maps API client error: {e.response.status_code}") from e

            except httpx.RequestError as e:
                backoff = (self.backoff_base ** attempt) * random.uniform(0.9, 1.1)
                logger.warning(
                    f"Maps API network error: {e}. Retrying in {backoff:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                last_error = str(e)
                await asyncio.sleep(backoff)

        logger.error(f"Maps API request failed after {self.max_retries} attempts: {last_error}")
        raise MapsAPIError(f"Maps API request failed after {self.max_retries} attempts: {last_error}")


_maps_client: Optional[GoogleMapsClient] = None


def get_maps_client() -> GoogleMapsClient:
    """Get the process-wide Maps client."""
    global _maps_client
    if _maps_client is None:
        _maps_client = GoogleMapsClient()
    return _maps_client


async def close_maps_client():
    global _maps_client
    if _maps_client is not None:
        await _maps_client.close()
        _maps_client = None
