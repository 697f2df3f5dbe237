"""
Deal category registry.

Each category carries the keyword set a deal title should mention for the
category to be believable. Titles that mention none of them are routed to
manual review as a category mismatch.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class CategoryConfig:
    """Configuration for a single deal category."""
    slug: str
    label: str
    keywords: List[str] = field(default_factory=list)


CATEGORY_REGISTRY: dict[str, CategoryConfig] = {
    "flower": CategoryConfig(
        slug="flower",
        label="Flower",
        keywords=["flower", "bud", "eighth", "ounce", "oz", "gram", "g"],
    ),
    "pre-rolls": CategoryConfig(
        slug="pre-rolls",
        label="Pre-Rolls",
        keywords=["pre-roll", "preroll", "joint", "blunt"],
    ),
    "vapes": CategoryConfig(
        slug="vapes",
        label="Vapes",
        keywords=["vape", "cart", "cartridge", "pen", "disposable"],
    ),
    "concentrates": CategoryConfig(
        slug="concentrates",
        label="Concentrates",
        keywords=["concentrate", "wax", "shatter", "live resin", "rosin", "dab"],
    ),
    "edibles": CategoryConfig(
        slug="edibles",
        label="Edibles",
        keywords=["edible", "gummy", "gummies", "chocolate", "cookie", "brownie"],
    ),
    "drinks": CategoryConfig(
        slug="drinks",
        label="Drinks",
        keywords=["drink", "beverage", "soda", "tea"],
    ),
    "topicals": CategoryConfig(
        slug="topicals",
        label="Topicals",
        keywords=["topical", "cream", "lotion", "balm"],
    ),
    "cbd/thca": CategoryConfig(
        slug="cbd/thca",
        label="CBD / THCa",
        keywords=["cbd", "thca", "hemp"],
    ),
    "accessories": CategoryConfig(
        slug="accessories",
        label="Accessories",
        keywords=["accessory", "grinder", "pipe", "bong", "vaporizer"],
    ),
}


def get_category(slug: Optional[str]) -> Optional[CategoryConfig]:
    """Look up a category by slug (case-insensitive)."""
    if not slug:
        return None
    return CATEGORY_REGISTRY.get(slug.strip().lower())


def get_all_categories() -> List[CategoryConfig]:
    """Get all registered categories."""
    return list(CATEGORY_REGISTRY.values())
