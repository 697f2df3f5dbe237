"""
Pydantic schemas for deal extraction and admission.

CandidateDeal doubles as the Instructor response model, so its field
descriptions are what the LLM sees.
"""

from datetime import date
from enum import Enum
from typing import List, Optional
import logging

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class CandidateDeal(BaseModel):
    """An unvalidated deal as returned by an extraction provider."""
    category: str = Field(
        description="One of: flower, pre-rolls, vapes, concentrates, edibles, "
                    "drinks, topicals, cbd/thca, accessories"
    )
    title: str = Field(description="Deal title as written by the dispensary")
    brand: Optional[str] = Field(
        default=None,
        description="Brand name if the deal names one"
    )
    product_name: Optional[str] = Field(
        default=None,
        description="Product name without the brand"
    )
    price_text: str = Field(
        description="Price or discount exactly as shown (e.g. '$25', '20% off', '2/$35')"
    )
    confidence: float = Field(
        default=1.0,
        description="0.0-1.0 confidence that this is a real, correctly read deal"
    )

    @field_validator("category")
    @classmethod
    def normalize_category(cls, v: str) -> str:
        return (v or "").strip().lower()

    @field_validator("title", "price_text")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        """Clamp to [0, 1]; providers occasionally return 0-100 or negatives."""
        if v is None:
            return 0.0
        if v < 0.0 or v > 1.0:
            logger.debug(f"Clamping out-of-range confidence {v}")
        return max(0.0, min(1.0, v))


class DealExtraction(BaseModel):
    """All deals found on one page."""
    deals: List[CandidateDeal] = Field(
        default_factory=list,
        description="Every distinct deal on the page; empty if there are none"
    )


class SourceContext(BaseModel):
    """Where a batch of candidates came from."""
    dispensary_name: str
    deal_date: date
    dispensary_id: Optional[int] = None
    city: Optional[str] = None
    source_url: Optional[str] = None


class AdmissionOutcome(str, Enum):
    DUPLICATE = "duplicate"
    ACCEPTED = "accepted"
    NEEDS_REVIEW = "needs_review"
    PLACEHOLDER = "placeholder"


class AdmissionResult(BaseModel):
    """Decision for one candidate."""
    outcome: AdmissionOutcome
    accepted: bool
    identity_hash: str
    needs_review: bool = False
    reasons: List[str] = Field(default_factory=list)
    deal_id: Optional[int] = None

    @property
    def review_reason(self) -> Optional[str]:
        return ", ".join(self.reasons) if self.reasons else None


class BatchAdmission(BaseModel):
    """Decisions for every candidate from one source page."""
    results: List[AdmissionResult] = Field(default_factory=list)

    @property
    def inserted(self) -> int:
        """Rows actually written (structured deals plus at most one placeholder)."""
        return sum(1 for r in self.results if r.accepted and r.deal_id is not None)

    @property
    def duplicates(self) -> int:
        return sum(1 for r in self.results if r.outcome == AdmissionOutcome.DUPLICATE)

    @property
    def flagged(self) -> int:
        return sum(1 for r in self.results if r.outcome == AdmissionOutcome.NEEDS_REVIEW)

    @property
    def placeholders(self) -> int:
        return sum(
            1 for r in self.results
            if r.outcome == AdmissionOutcome.PLACEHOLDER and r.deal_id is not None
        )
