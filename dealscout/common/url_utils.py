"""
Shared URL validation and normalization utilities.

Dispensary websites come from Places and flyer URLs from operators, so both
get the same cleanup before anything is fetched.
"""

from typing import Iterable, List, Optional
from urllib.parse import urljoin, urlparse

# Placeholder values seen in upstream data instead of a real URL
INVALID_URL_PLACEHOLDERS = {
    "not mentioned", "not specified", "unknown", "n/a", "none", "",
    "null", "undefined", "na", "not available", "no website", "no url",
}

# Listing/social pages that are never a dispensary's own deals page
NON_DEAL_DOMAINS = {
    "facebook.com", "instagram.com", "twitter.com", "x.com", "tiktok.com",
    "youtube.com", "linkedin.com", "yelp.com", "google.com",
}


def is_valid_url(url: Optional[str]) -> bool:
    """
    Check if URL is a real URL (not a placeholder or invalid).

    Examples:
        >>> is_valid_url("https://example.com")
        True
        >>> is_valid_url("n/a")
        False
    """
    if not url:
        return False
    url_lower = url.lower().strip()
    if url_lower in INVALID_URL_PLACEHOLDERS:
        return False
    if url_lower.startswith("www."):
        return True
    if not url_lower.startswith(("http://", "https://")):
        return False
    return bool(urlparse(url_lower).netloc)


def sanitize_url(url: Optional[str]) -> Optional[str]:
    """Return a fetchable URL or None. Adds https:// to bare www. hosts."""
    if not is_valid_url(url):
        return None
    url = url.strip()
    if url.lower().startswith("www."):
        url = "https://" + url
    return url


def host_of(url: Optional[str]) -> str:
    if not url:
        return ""
    return urlparse(url.strip().lower()).netloc


def host_matches(url: Optional[str], hosts: Iterable[str]) -> bool:
    """True if any of the host fragments appears in the URL's host."""
    host = host_of(url)
    return bool(host) and any(fragment in host for fragment in hosts)


def is_deal_site(url: Optional[str]) -> bool:
    """Reject social and listing pages that never hold a store's own deals."""
    host = host_of(url)
    if not host:
        return False
    return not any(host == d or host.endswith("." + d) for d in NON_DEAL_DOMAINS)


def build_page_urls(website: str, paths: Iterable[str]) -> List[str]:
    """Deal-page candidates under a website, homepage last.

    >>> build_page_urls("https://shop.example/", ["deals", "menu"])
    ['https://shop.example/deals', 'https://shop.example/menu', 'https://shop.example/']
    """
    base = website.rstrip("/") + "/"
    urls = [urljoin(base, path.strip("/")) for path in paths if path.strip("/")]
    urls.append(base)
    return urls
