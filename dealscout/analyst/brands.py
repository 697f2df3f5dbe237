"""
Brand / product splitting for display.

The split never influences admission; it only fills the brand and
product_name columns and the brand registry.
"""

from typing import Optional, Tuple

TITLE_SEPARATORS = (" - ", " / ", " | ", " – ", " — ")
MAX_SEPARATED_BRAND_LEN = 30
MIN_LEADING_BRAND_LEN = 2
MAX_LEADING_BRAND_LEN = 20


def extract_brand_from_title(title: str) -> Tuple[Optional[str], str]:
    """Guess (brand, product_name) from a deal title.

    Tries "Brand - Product" style separators first, then a capitalized or
    all-caps leading word ("STIIIZY 1g pods"). Falls back to (None, title).
    """
    title = (title or "").strip()

    for sep in TITLE_SEPARATORS:
        parts = title.split(sep)
        if len(parts) >= 2:
            brand = parts[0].strip()
            product = sep.join(parts[1:]).strip()
            if len(brand) <= MAX_SEPARATED_BRAND_LEN and len(product) > len(brand):
                return brand, product

    words = title.split()
    if len(words) >= 2:
        first = words[0]
        # "20% off" or "$25 eighths" do not name a brand
        if first[0].isalpha() and (first == first.upper() or first[0].isupper()):
            if MIN_LEADING_BRAND_LEN <= len(first) <= MAX_LEADING_BRAND_LEN:
                return first, " ".join(words[1:])

    return None, title


def split_brand(
    title: str,
    brand: Optional[str] = None,
    product_name: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Prefer the extractor's structured brand, else the title heuristic."""
    if brand and brand.strip():
        return brand.strip(), (product_name or title or "").strip() or None
    guessed_brand, guessed_product = extract_brand_from_title(title)
    return guessed_brand, (product_name or guessed_product or None)
