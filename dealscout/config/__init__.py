from .categories import CATEGORY_REGISTRY, CategoryConfig, get_all_categories, get_category
from .settings import settings

__all__ = ["CATEGORY_REGISTRY", "CategoryConfig", "settings", "get_all_categories", "get_category"]
