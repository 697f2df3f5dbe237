from .schemas import (
    CandidateDeal,
    DealExtraction,
    SourceContext,
    AdmissionOutcome,
    AdmissionResult,
    BatchAdmission,
)
from .quality import DedupQualityEngine, compute_identity_hash, leading_price, normalize_text
from .ranking import rank_deals, score_deals, parse_price_score
from .extractor import DealParser, InstructorDealParser, ExtractionError

__all__ = [
    "CandidateDeal",
    "DealExtraction",
    "SourceContext",
    "AdmissionOutcome",
    "AdmissionResult",
    "BatchAdmission",
    "DedupQualityEngine",
    "compute_identity_hash",
    "leading_price",
    "normalize_text",
    "rank_deals",
    "score_deals",
    "parse_price_score",
    "DealParser",
    "InstructorDealParser",
    "ExtractionError",
]
