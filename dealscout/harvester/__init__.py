from .extraction import ExtractionProvider, WebsiteDealExtractor, clean_html
from .dispatcher import IngestionDispatcher, DispatchResult, SourceOutcome, SourceResult

__all__ = [
    "ExtractionProvider",
    "WebsiteDealExtractor",
    "clean_html",
    "IngestionDispatcher",
    "DispatchResult",
    "SourceOutcome",
    "SourceResult",
]
