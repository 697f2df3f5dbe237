"""
Ingestion dispatcher - fetches and admits deals for many dispensaries per run.

Handles:
- Building the candidate dispensary list from subscriber areas, subscribed
  zones, and every active dispensary with an extraction target
- Priority ordering (high-value targets, any target, reliability)
- Windowed fan-out: each window runs concurrently and finishes before the
  next starts, so peak concurrency never exceeds the window size
- Per-dispensary reliability reward/penalty and auto-deactivation
- Error isolation (one bad dispensary doesn't crash the run)

Reliability updates are read-modify-write on the dispensary row. That is
only safe because a run never schedules the same dispensary twice.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..analyst.quality import DedupQualityEngine
from ..analyst.schemas import SourceContext
from ..archivist import storage
from ..archivist.database import SessionScope, get_session
from ..archivist.models import UpstreamSource, utc_now_naive
from ..common.geocoding import Geocoder, haversine_miles
from ..common.maps_client import MapsAPIError
from ..common.url_utils import host_matches
from ..config.settings import settings
from .extraction import ExtractionProvider

logger = logging.getLogger(__name__)


class SourceOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SourceResult:
    source_id: Optional[int]
    source_name: str
    outcome: SourceOutcome
    yield_count: int = 0
    deals_inserted: int = 0
    error: Optional[str] = None


@dataclass
class DispatchResult:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    deals_inserted: int = 0
    dispensaries_processed: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, result: SourceResult) -> None:
        self.dispensaries_processed += 1
        self.deals_inserted += result.deals_inserted
        if result.outcome == SourceOutcome.PROCESSED:
            self.processed += 1
        elif result.outcome == SourceOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        if result.error:
            self.errors.append(result.error)

    @property
    def total_failure(self) -> bool:
        return self.dispensaries_processed > 0 and self.failed == self.dispensaries_processed

    def to_dict(self) -> dict:
        return asdict(self)


def dedupe_by_name(sources: Iterable[UpstreamSource]) -> List[UpstreamSource]:
    """First occurrence of each name wins."""
    seen = set()
    unique = []
    for source in sources:
        if source.name in seen:
            continue
        seen.add(source.name)
        unique.append(source)
    return unique


class IngestionDispatcher:
    """Runs extraction + admission for a batch of dispensaries."""

    def __init__(
        self,
        provider: ExtractionProvider,
        geocoder: Optional[Geocoder] = None,
        quality: Optional[DedupQualityEngine] = None,
        session_scope: SessionScope = get_session,
        window_size: Optional[int] = None,
        reliability_reward: Optional[float] = None,
        reliability_penalty: Optional[float] = None,
        reliability_floor: Optional[float] = None,
        high_value_hosts: Optional[List[str]] = None,
    ):
        self.provider = provider
        self.geocoder = geocoder
        self.quality = quality or DedupQualityEngine()
        self.session_scope = session_scope
        self.window_size = max(1, window_size or settings.ingestion_window_size)
        self.reward = settings.reliability_reward if reliability_reward is None else reliability_reward
        self.penalty = settings.reliability_penalty if reliability_penalty is None else reliability_penalty
        self.floor = settings.reliability_floor if reliability_floor is None else reliability_floor
        self.high_value_hosts = settings.high_value_hosts if high_value_hosts is None else high_value_hosts

    # -------------------------------------------------------------------------
    # Candidate list
    # -------------------------------------------------------------------------

    async def build_candidate_sources(self) -> List[UpstreamSource]:
        """Merge nearby, zone-linked, and targetable dispensaries, de-duplicated by name."""
        async with self.session_scope() as session:
            areas = await storage.get_subscription_areas(session, settings.subscriber_query_limit)
            active = await storage.get_active_sources(session)
            linked = await storage.get_sources_in_subscribed_zones(session)

        nearby: List[UpstreamSource] = []
        for postal_code, radius_miles, latitude, longitude in areas:
            if latitude is None or longitude is None:
                location = await self._resolve(postal_code)
                if location is None:
                    continue
                latitude, longitude = location.latitude, location.longitude
            for source in active:
                if source.latitude is None or source.longitude is None:
                    continue
                distance = haversine_miles(latitude, longitude, source.latitude, source.longitude)
                if distance <= radius_miles:
                    nearby.append(source)

        with_targets = [s for s in active if s.has_extraction_target]
        candidates = dedupe_by_name(nearby + linked + with_targets)
        logger.info(
            f"Candidate dispensaries: {len(candidates)} "
            f"(nearby={len(nearby)}, zone-linked={len(linked)}, with targets={len(with_targets)})"
        )
        return candidates

    async def _resolve(self, postal_code: str):
        if self.geocoder is None:
            return None
        try:
            return await self.geocoder.resolve(postal_code)
        except MapsAPIError as e:
            logger.warning(f"Skipping subscriber area {postal_code}: {e}")
            return None

    def is_high_value(self, source: UpstreamSource) -> bool:
        return host_matches(source.flyer_url, self.high_value_hosts)

    def prioritize(self, sources: Iterable[UpstreamSource]) -> List[UpstreamSource]:
        """Stable sort: high-value target, then any target, then reliability descending."""
        def priority(source: UpstreamSource):
            return (
                0 if self.is_high_value(source) else 1,
                0 if source.has_extraction_target else 1,
                -(source.reliability_score or 0.0),
            )
        return sorted(sources, key=priority)

    # -------------------------------------------------------------------------
    # Per-source work
    # -------------------------------------------------------------------------

    async def record_outcome(self, source: UpstreamSource, success: bool) -> None:
        async with self.session_scope() as session:
            updated = await storage.record_ingestion_outcome(
                session, source.id, success,
                reward=self.reward, penalty=self.penalty, floor=self.floor,
            )
        if updated is not None:
            source.reliability_score = updated.reliability_score
            source.active = updated.active

    async def process_source(self, source: UpstreamSource, deal_date: date) -> SourceResult:
        """Extract, admit, and score one dispensary.

        Provider failures become a reliability penalty. Only persistence
        failures are reported as errors.
        """
        try:
            candidates = await self.provider.extract(source)
        except Exception as e:
            logger.warning(
                f"EXTRACTION_FAILED: {source.name} (id={source.id}): {type(e).__name__}: {e}"
            )
            candidates = None

        try:
            if candidates is None:
                await self.record_outcome(source, success=False)
                return SourceResult(source.id, source.name, SourceOutcome.FAILED)

            if not candidates:
                if not source.has_extraction_target:
                    return SourceResult(source.id, source.name, SourceOutcome.SKIPPED)
                logger.info(f"EXTRACTION_EMPTY: {source.name} (id={source.id}) yielded nothing")
                await self.record_outcome(source, success=False)
                return SourceResult(source.id, source.name, SourceOutcome.FAILED)

            context = SourceContext(
                dispensary_id=source.id,
                dispensary_name=source.name,
                city=source.city,
                source_url=source.flyer_url or source.website,
                deal_date=deal_date,
            )
            async with self.session_scope() as session:
                batch = await self.quality.admit_batch(session, candidates, context)
                await storage.record_ingestion_outcome(
                    session, source.id, True,
                    reward=self.reward, penalty=self.penalty, floor=self.floor,
                )
            return SourceResult(
                source.id, source.name, SourceOutcome.PROCESSED,
                yield_count=len(candidates),
                deals_inserted=batch.inserted,
            )

        except SQLAlchemyError as e:
            error = f"dispensary {source.name} (id={source.id}): persistence failed: {e}"
            logger.error(error, exc_info=True)
            return SourceResult(source.id, source.name, SourceOutcome.FAILED, error=error)

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    async def process_batch(
        self,
        sources: List[UpstreamSource],
        deal_date: Optional[date] = None,
    ) -> DispatchResult:
        """Process dispensaries in fixed windows; each window completes before the next."""
        deal_date = deal_date or utc_now_naive().date()
        result = DispatchResult()

        # Same dispensary twice in one run would race on its reliability row
        seen_ids = set()
        queue = []
        for source in sources:
            key = source.id if source.id is not None else id(source)
            if key in seen_ids:
                continue
            seen_ids.add(key)
            queue.append(source)

        if not queue:
            return result

        total_windows = (len(queue) + self.window_size - 1) // self.window_size
        for window_num, i in enumerate(range(0, len(queue), self.window_size), 1):
            window = queue[i:i + self.window_size]

            window_results = await asyncio.gather(
                *[self.process_source(source, deal_date) for source in window],
                return_exceptions=True,
            )

            for source, outcome in zip(window, window_results):
                if isinstance(outcome, BaseException):
                    error = f"dispensary {source.name} (id={source.id}): {type(outcome).__name__}: {outcome}"
                    logger.error(error, exc_info=outcome)
                    outcome = SourceResult(source.id, source.name, SourceOutcome.FAILED, error=error)
                result.record(outcome)

            logger.info(
                f"Window {window_num}/{total_windows}: {len(window)} dispensaries, "
                f"totals processed={result.processed} skipped={result.skipped} "
                f"failed={result.failed} deals={result.deals_inserted}"
            )

        return result

    async def run(self, deal_date: Optional[date] = None) -> DispatchResult:
        """Build, prioritize, and process the full candidate list."""
        sources = self.prioritize(await self.build_candidate_sources())
        result = await self.process_batch(sources, deal_date)
        logger.info(
            f"Ingestion complete: dispensaries={result.dispensaries_processed} "
            f"processed={result.processed} skipped={result.skipped} failed={result.failed} "
            f"deals_inserted={result.deals_inserted}"
        )
        return result
