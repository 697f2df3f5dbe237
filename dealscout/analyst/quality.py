"""
Deal quality gate: identity hashing, duplicate detection, confidence and
heuristic review routing.

Admission order for each candidate:
1. identity hash over (source, normalized title, normalized price, date)
2. exact duplicate (same source, date and hash) -> rejected
3. fuzzy duplicate (same source, trailing window, same title, same leading price) -> rejected
4. confidence below the low floor -> one summary placeholder per source per day
5. confidence below the high floor -> accepted, review reason "low_confidence"
6. price / category heuristics -> accepted, more review reasons
7. brand/product split (display only)
"""

import hashlib
import logging
import re
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..archivist import storage
from ..archivist.models import AcceptedDeal
from ..config.categories import get_category
from ..config.settings import settings
from .brands import split_brand
from .schemas import (
    AdmissionOutcome,
    AdmissionResult,
    BatchAdmission,
    CandidateDeal,
    SourceContext,
)

logger = logging.getLogger(__name__)

LEADING_PRICE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")
THOUSANDS_SEPARATOR = re.compile(r"(?<=\d),(?=\d{3}\b)")

REASON_LOW_CONFIDENCE = "low_confidence"
REASON_PRICE_HIGH = "unusual_price_high"
REASON_PRICE_LOW = "unusual_price_low"
REASON_CATEGORY_MISMATCH = "category_mismatch"

PLACEHOLDER_PRICE_TEXT = "See source for details"


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, trim, and collapse internal whitespace."""
    return re.sub(r"\s+", " ", (value or "").strip().lower())


def leading_price(price_text: Optional[str]) -> Optional[float]:
    """First number in a price text ("$1,200 / oz" -> 1200.0), or None."""
    if not price_text:
        return None
    match = LEADING_PRICE_PATTERN.search(THOUSANDS_SEPARATOR.sub("", price_text))
    if not match:
        return None
    return float(match.group(1))


def compute_identity_hash(
    source_name: str, title: str, price_text: str, deal_date: date
) -> str:
    """Deterministic fingerprint of a deal for one source on one day."""
    parts = [
        normalize_text(source_name),
        normalize_text(title),
        normalize_text(price_text),
        deal_date.isoformat(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def placeholder_title(source_name: str) -> str:
    return f"{source_name} - Multiple Deals Available"


def check_price(
    price_text: str,
    high_limit: float = 200.0,
    low_limit: float = 1.0,
) -> List[str]:
    price = leading_price(price_text)
    if price is None:
        return []
    if price > high_limit:
        return [REASON_PRICE_HIGH]
    if 0 < price < low_limit:
        return [REASON_PRICE_LOW]
    return []


def check_category(category: str, title: str) -> List[str]:
    """Flag titles that mention none of the category's keywords.

    Unknown categories have no keyword set and are never flagged.
    """
    config = get_category(category)
    if config is None or not config.keywords:
        return []
    title_lower = (title or "").lower()
    if any(keyword in title_lower for keyword in config.keywords):
        return []
    return [REASON_CATEGORY_MISMATCH]


class DedupQualityEngine:
    """Decides accept / accept-with-review / reject for candidate deals.

    Thresholds default to settings and can be overridden per instance.
    All writes go through the caller's session; the caller owns the commit,
    so a review flag always lands in the same transaction as its deal.
    """

    def __init__(
        self,
        low_confidence_floor: Optional[float] = None,
        high_confidence_floor: Optional[float] = None,
        dedup_window_days: Optional[int] = None,
        price_high_limit: Optional[float] = None,
        price_low_limit: Optional[float] = None,
        placeholder_category: Optional[str] = None,
    ):
        self.low_confidence_floor = (
            settings.low_confidence_floor if low_confidence_floor is None else low_confidence_floor
        )
        self.high_confidence_floor = (
            settings.high_confidence_floor if high_confidence_floor is None else high_confidence_floor
        )
        self.dedup_window_days = (
            settings.dedup_window_days if dedup_window_days is None else dedup_window_days
        )
        self.price_high_limit = (
            settings.price_high_limit if price_high_limit is None else price_high_limit
        )
        self.price_low_limit = (
            settings.price_low_limit if price_low_limit is None else price_low_limit
        )
        self.placeholder_category = placeholder_category or settings.placeholder_category

    def review_reasons(self, candidate: CandidateDeal) -> List[str]:
        """Review reasons for a candidate that cleared the low-confidence floor."""
        reasons: List[str] = []
        if candidate.confidence < self.high_confidence_floor:
            reasons.append(REASON_LOW_CONFIDENCE)
        reasons.extend(check_price(candidate.price_text, self.price_high_limit, self.price_low_limit))
        reasons.extend(check_category(candidate.category, candidate.title))
        return reasons

    async def is_duplicate(
        self,
        session: AsyncSession,
        candidate: CandidateDeal,
        context: SourceContext,
        identity_hash: str,
    ) -> bool:
        if await storage.deal_hash_exists(
            session, context.dispensary_name, context.deal_date, identity_hash
        ):
            logger.debug(f"DEAL_DUPLICATE: exact match for '{candidate.title}' at {context.dispensary_name}")
            return True

        recent_prices = await storage.get_recent_prices_for_title(
            session,
            context.dispensary_name,
            normalize_text(candidate.title),
            context.deal_date,
            self.dedup_window_days,
        )
        price = leading_price(candidate.price_text)
        for other in recent_prices:
            if leading_price(other) == price:
                logger.debug(
                    f"DEAL_DUPLICATE: same title and price within {self.dedup_window_days}d "
                    f"for '{candidate.title}' at {context.dispensary_name}"
                )
                return True
        return False

    async def admit(
        self,
        session: AsyncSession,
        candidate: CandidateDeal,
        context: SourceContext,
    ) -> AdmissionResult:
        identity_hash = compute_identity_hash(
            context.dispensary_name, candidate.title, candidate.price_text, context.deal_date
        )

        if await self.is_duplicate(session, candidate, context, identity_hash):
            return AdmissionResult(
                outcome=AdmissionOutcome.DUPLICATE,
                accepted=False,
                identity_hash=identity_hash,
            )

        if candidate.confidence < self.low_confidence_floor:
            logger.info(
                f"LOW_CONFIDENCE: '{candidate.title}' ({candidate.confidence:.2f}) at "
                f"{context.dispensary_name} folded into source placeholder"
            )
            return await self.emit_placeholder(session, context)

        reasons = self.review_reasons(candidate)
        needs_review = bool(reasons)
        brand, product_name = split_brand(candidate.title, candidate.brand, candidate.product_name)
        brand_id = await storage.find_or_create_brand(session, brand) if brand else None

        deal = AcceptedDeal(
            dispensary_id=context.dispensary_id,
            dispensary_name=context.dispensary_name,
            city=context.city,
            source_url=context.source_url,
            deal_date=context.deal_date,
            category=candidate.category,
            title=candidate.title,
            normalized_title=normalize_text(candidate.title),
            brand=brand,
            product_name=product_name,
            brand_id=brand_id,
            price_text=candidate.price_text,
            confidence=candidate.confidence,
            identity_hash=identity_hash,
            is_valid=True,
            needs_review=needs_review,
            review_reason=", ".join(reasons) if reasons else None,
            is_placeholder=False,
        )
        deal_id = await storage.insert_deal(session, deal)
        if deal_id is None:
            # Lost a race with a concurrent writer on the unique constraint
            logger.debug(f"DEAL_DUPLICATE: insert conflict for '{candidate.title}' at {context.dispensary_name}")
            return AdmissionResult(
                outcome=AdmissionOutcome.DUPLICATE,
                accepted=False,
                identity_hash=identity_hash,
            )

        if needs_review:
            await storage.create_review_flag(session, deal_id, deal.review_reason)
            logger.info(
                f"DEAL_FLAGGED: '{candidate.title}' at {context.dispensary_name}: {deal.review_reason}"
            )

        return AdmissionResult(
            outcome=AdmissionOutcome.NEEDS_REVIEW if needs_review else AdmissionOutcome.ACCEPTED,
            accepted=True,
            identity_hash=identity_hash,
            needs_review=needs_review,
            reasons=reasons,
            deal_id=deal_id,
        )

    async def emit_placeholder(
        self, session: AsyncSession, context: SourceContext
    ) -> AdmissionResult:
        """Write the single "deals available, see source" row for a source and day.

        The fixed title makes the identity hash constant per source per day,
        so repeated calls insert nothing after the first.
        """
        title = placeholder_title(context.dispensary_name)
        identity_hash = compute_identity_hash(
            context.dispensary_name, title, PLACEHOLDER_PRICE_TEXT, context.deal_date
        )
        deal = AcceptedDeal(
            dispensary_id=context.dispensary_id,
            dispensary_name=context.dispensary_name,
            city=context.city,
            source_url=context.source_url,
            deal_date=context.deal_date,
            category=self.placeholder_category,
            title=title,
            normalized_title=normalize_text(title),
            price_text=PLACEHOLDER_PRICE_TEXT,
            confidence=0.0,
            identity_hash=identity_hash,
            is_valid=True,
            needs_review=False,
            is_placeholder=True,
        )
        deal_id = await storage.insert_deal(session, deal)
        return AdmissionResult(
            outcome=AdmissionOutcome.PLACEHOLDER,
            accepted=deal_id is not None,
            identity_hash=identity_hash,
            deal_id=deal_id,
        )

    async def admit_batch(
        self,
        session: AsyncSession,
        candidates: Iterable[CandidateDeal],
        context: SourceContext,
    ) -> BatchAdmission:
        """Admit every candidate from one page; at most one placeholder is written."""
        batch = BatchAdmission()
        placeholder: Optional[AdmissionResult] = None
        for candidate in candidates:
            if placeholder is not None and candidate.confidence < self.low_confidence_floor:
                batch.results.append(AdmissionResult(
                    outcome=AdmissionOutcome.PLACEHOLDER,
                    accepted=False,
                    identity_hash=placeholder.identity_hash,
                ))
                continue
            result = await self.admit(session, candidate, context)
            if result.outcome == AdmissionOutcome.PLACEHOLDER:
                placeholder = result
            batch.results.append(result)

        logger.info(
            f"Admitted batch for {context.dispensary_name} ({context.deal_date}): "
            f"{len(batch.results)} candidates, {batch.inserted} inserted, "
            f"{batch.duplicates} duplicates, {batch.flagged} flagged, "
            f"{batch.placeholders} placeholders"
        )
        return batch
