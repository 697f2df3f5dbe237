"""
Deal parser - turns a cleaned deals page into candidate deals.

Uses Instructor + Claude for structured extraction into DealExtraction.
The parser is the only place that talks to the LLM; everything after it
(dedup, confidence gating, review routing) lives in quality.py.
"""

import logging
from typing import List, Optional, Protocol

import httpx
import instructor
from anthropic import AsyncAnthropic, APIError, APITimeoutError, RateLimitError
from instructor.core import InstructorRetryException

from ..config.categories import get_all_categories
from ..config.settings import settings
from .schemas import CandidateDeal, DealExtraction

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """A page could not be fetched or parsed into deals."""
    pass


class DealParser(Protocol):
    async def parse(
        self, page_text: str, dispensary_name: str, city: Optional[str] = None
    ) -> List[CandidateDeal]:
        ...


SYSTEM_PROMPT = f"""You are extracting cannabis deal data from a dispensary website's deals/specials page.

For every distinct deal return:
- category: one of {", ".join(c.slug for c in get_all_categories())}
- title: the full product/deal title as shown
- brand: the brand or producer if present (e.g. "STIIIZY", "Element"), else empty
- product_name: the product without the brand, else empty
- price_text: the price or discount exactly as shown (e.g. "2/$35", "$15/gram", "30% off")
- confidence: 0-1, how sure you are this is a real, correctly read deal

Ignore navigation, headers, footers, and non-deal content. If the page has
no deals, return an empty list. Never invent prices."""


def build_parse_prompt(page_text: str, dispensary_name: str, city: Optional[str] = None) -> str:
    lines = [f"Dispensary: {dispensary_name}"]
    if city:
        lines.append(f"City: {city}")
    lines.append("")
    lines.append("Extract all deals from this page text:")
    lines.append(page_text)
    return "\n".join(lines)


class InstructorDealParser:
    """DealParser backed by Claude structured output via Instructor."""

    def __init__(self, client: Optional[instructor.AsyncInstructor] = None):
        self._client = client
        self._anthropic: Optional[AsyncAnthropic] = None

    @property
    def client(self) -> instructor.AsyncInstructor:
        if self._client is None:
            self._anthropic = AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                timeout=httpx.Timeout(settings.llm_timeout, connect=settings.llm_connect_timeout),
            )
            self._client = instructor.from_anthropic(self._anthropic)
        return self._client

    async def close(self):
        """Close the Anthropic client this parser created. Injected clients are left alone."""
        if self._anthropic is not None:
            await self._anthropic.close()
            self._anthropic = None
            self._client = None

    async def parse(
        self, page_text: str, dispensary_name: str, city: Optional[str] = None
    ) -> List[CandidateDeal]:
        if not page_text.strip():
            return []
        try:
            extraction, completion = await self.client.messages.create_with_completion(
                model=settings.llm_model,
                max_tokens=settings.llm_max_tokens,
                temperature=settings.llm_temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": build_parse_prompt(page_text, dispensary_name, city)}],
                response_model=DealExtraction,
                max_retries=settings.llm_max_retries,
            )
        except (APITimeoutError, RateLimitError) as e:
            raise ExtractionError(f"LLM unavailable for {dispensary_name}: {e}") from e
        except (APIError, InstructorRetryException) as e:
            raise ExtractionError(f"LLM extraction failed for {dispensary_name}: {e}") from e

        usage = getattr(completion, "usage", None)
        if usage is not None:
            logger.debug(f"Claude call tokens: in={usage.input_tokens}, out={usage.output_tokens}")
        logger.info(f"Parsed {len(extraction.deals)} candidate deals for {dispensary_name}")
        return extraction.deals
