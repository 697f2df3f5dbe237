"""
Outbound HTTP clients.

Two flavours: page clients fetch dispensary websites (browser headers,
redirects followed), API clients talk JSON to Maps and webhooks.
"""

from typing import Optional

import httpx

from ..config.settings import settings

# Dispensary sites commonly sit behind bot filters that reject library UAs
USER_AGENT_BROWSER = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
USER_AGENT_SERVICE = "DealScout/1.0 (dispensary deal aggregator)"

PAGE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def create_page_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """Client for dispensary deal pages."""
    return httpx.AsyncClient(
        timeout=timeout or settings.request_timeout,
        headers={"User-Agent": USER_AGENT_BROWSER, **PAGE_HEADERS},
        limits=httpx.Limits(
            max_connections=settings.ingestion_window_size * 4,
            max_keepalive_connections=settings.ingestion_window_size,
        ),
        follow_redirects=True,
    )


def create_api_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """Client for JSON web services (Maps, Slack, Discord)."""
    return httpx.AsyncClient(
        timeout=timeout or settings.request_timeout,
        headers={"User-Agent": USER_AGENT_SERVICE, "Accept": "application/json"},
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
    )
