"""
Website deal extraction.

Fetches a dispensary's flyer or deals pages, strips them down to visible
text, and hands the text to a DealParser. Tries the flyer first, then
/deals, /specials, /menu and finally the homepage, stopping at the first
page that yields any candidates.
"""

import logging
import re
from typing import List, Optional, Protocol

import httpx
from bs4 import BeautifulSoup

from ..analyst.extractor import DealParser, ExtractionError
from ..analyst.schemas import CandidateDeal
from ..archivist.models import UpstreamSource
from ..common.http_client import create_page_client
from ..common.url_utils import build_page_urls, is_deal_site, sanitize_url
from ..config.settings import settings

logger = logging.getLogger(__name__)

NON_CONTENT_TAGS = ["script", "style", "noscript", "svg", "iframe"]
MISSING_PAGE_STATUSES = {404, 410}


class ExtractionProvider(Protocol):
    async def extract(self, source: UpstreamSource) -> List[CandidateDeal]:
        """Candidate deals for a source; [] if none; raises on transport failure."""
        ...


def clean_html(html: str, max_chars: int = 50000) -> str:
    """Visible page text, whitespace-collapsed and truncated."""
    soup = BeautifulSoup(html, "lxml")
    for element in soup(NON_CONTENT_TAGS):
        element.decompose()
    text = soup.get_text(separator=" ", strip=True)
    return re.sub(r"\s+", " ", text)[:max_chars]


class WebsiteDealExtractor:
    """ExtractionProvider that reads deals off a dispensary's own pages."""

    def __init__(
        self,
        parser: DealParser,
        http_client: Optional[httpx.AsyncClient] = None,
        page_paths: Optional[List[str]] = None,
        max_chars: Optional[int] = None,
    ):
        self.parser = parser
        self._client = http_client
        self._owns_client = http_client is None
        self.page_paths = settings.deal_paths if page_paths is None else page_paths
        self.max_chars = max_chars or settings.max_page_chars

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = create_page_client()
            self._owns_client = True
        return self._client

    async def close(self):
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
        close_parser = getattr(self.parser, "close", None)
        if close_parser is not None:
            await close_parser()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def page_urls(self, source: UpstreamSource) -> List[str]:
        urls: List[str] = []
        flyer = sanitize_url(source.flyer_url)
        if flyer:
            urls.append(flyer)
        website = sanitize_url(source.website)
        if website and is_deal_site(website):
            urls.extend(u for u in build_page_urls(website, self.page_paths) if u not in urls)
        return urls

    async def fetch(self, url: str) -> Optional[str]:
        """Page HTML, None for a missing page, ExtractionError for anything else."""
        client = await self._get_client()
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise ExtractionError(f"Fetching {url} failed: {type(e).__name__}: {e}") from e

        if response.status_code in MISSING_PAGE_STATUSES:
            logger.debug(f"No page at {url} ({response.status_code})")
            return None
        if response.status_code >= 400:
            raise ExtractionError(f"Fetching {url} returned HTTP {response.status_code}")
        return response.text

    async def extract(self, source: UpstreamSource) -> List[CandidateDeal]:
        urls = self.page_urls(source)
        if not urls:
            return []

        last_error: Optional[ExtractionError] = None
        fetched_any = False
        for url in urls:
            try:
                html = await self.fetch(url)
            except ExtractionError as e:
                logger.warning(f"{source.name}: {e}")
                last_error = e
                continue
            if not html:
                continue

            fetched_any = True
            deals = await self.parser.parse(clean_html(html, self.max_chars), source.name, source.city)
            if deals:
                logger.info(f"{source.name}: {len(deals)} candidate deals from {url}")
                return deals

        if not fetched_any and last_error is not None:
            raise last_error
        return []
