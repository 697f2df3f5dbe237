"""
Lease-based zone refresh.

A zone is claimed by stamping a lease token and expiry in a single
conditional UPDATE ... RETURNING, so two overlapping triggers can never
both own the same zone. Every exit path clears the lease; a crashed run is
covered by the expiry alone.
"""

import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..archivist import storage
from ..archivist.database import SessionScope, get_session
from ..archivist.models import Zone, ZoneStatus, utc_now_naive
from ..common.geocoding import Geocoder, GeoLocation, miles_to_meters
from ..common.places import SourceDiscovery
from ..config.settings import settings

logger = logging.getLogger(__name__)


class ZoneOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ZoneRefresh:
    outcome: ZoneOutcome
    sources_found: int = 0
    error: Optional[str] = None


@dataclass
class ZoneBatchResult:
    claimed: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, refresh: ZoneRefresh) -> None:
        if refresh.outcome == ZoneOutcome.PROCESSED:
            self.processed += 1
        elif refresh.outcome == ZoneOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        if refresh.error:
            self.errors.append(refresh.error)

    @property
    def total_failure(self) -> bool:
        """Every claimed zone failed."""
        return self.claimed > 0 and self.failed == self.claimed

    def to_dict(self) -> dict:
        return asdict(self)


def claimable(now: datetime):
    """ACTIVE, due, and either unleased or holding an expired lease."""
    return and_(
        Zone.status == ZoneStatus.ACTIVE.value,
        Zone.next_due_at <= now,
        or_(Zone.lease_token.is_(None), Zone.lease_expires_at < now),
    )


class ZoneLeaseScheduler:
    """Claims due zones and refreshes each zone's dispensary list."""

    def __init__(
        self,
        geocoder: Geocoder,
        discovery: SourceDiscovery,
        session_scope: SessionScope = get_session,
        lease_duration_minutes: Optional[int] = None,
        geocode_retry_minutes: Optional[int] = None,
        backoff_minutes: Optional[int] = None,
        discovery_radius_miles: Optional[float] = None,
        discovery_max_results: Optional[int] = None,
    ):
        self.geocoder = geocoder
        self.discovery = discovery
        self.session_scope = session_scope
        self.lease_duration = timedelta(
            minutes=lease_duration_minutes or settings.lease_duration_minutes
        )
        self.geocode_retry = timedelta(
            minutes=geocode_retry_minutes or settings.geocode_retry_minutes
        )
        self.backoff = timedelta(minutes=backoff_minutes or settings.zone_backoff_minutes)
        self.radius_miles = discovery_radius_miles or settings.discovery_radius_miles
        self.max_results = discovery_max_results or settings.discovery_max_results

    @staticmethod
    def clamp_batch_size(batch_size: Optional[int]) -> int:
        if batch_size is None:
            batch_size = settings.zone_batch_size
        return max(1, min(int(batch_size), settings.zone_batch_size_max))

    async def claim_due_zones(
        self, batch_size: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[Zone]:
        """Atomically lease up to batch_size due zones, oldest next_due first.

        The inner SELECT uses FOR UPDATE SKIP LOCKED on PostgreSQL so
        concurrent claimers pass over each other's rows; the outer WHERE
        repeats the claimable predicate so a row that changed between the
        SELECT and the UPDATE is never stamped twice.
        """
        limit = self.clamp_batch_size(batch_size)
        now = now or utc_now_naive()
        token = uuid.uuid4().hex

        candidates = (
            select(Zone.id)
            .where(claimable(now))
            .order_by(Zone.next_due_at, Zone.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(Zone)
            .where(Zone.id.in_(candidates))
            .where(claimable(now))
            .values(
                lease_token=token,
                lease_expires_at=now + self.lease_duration,
                updated_at=now,
            )
            .returning(Zone)
            .execution_options(synchronize_session=False)
        )

        async with self.session_scope() as session:
            result = await session.execute(stmt)
            zones = list(result.scalars().all())

        zones.sort(key=lambda z: (z.next_due_at, z.id))
        if zones:
            logger.info(
                f"ZONE_CLAIMED: {len(zones)} zone(s) leased until "
                f"{now + self.lease_duration:%H:%M:%S} "
                f"({', '.join(z.postal_code for z in zones)})"
            )
        return zones

    async def release(
        self,
        zone: Zone,
        next_due_at: datetime,
        now: datetime,
        processed: bool = False,
    ) -> bool:
        """Clear our lease and reschedule. No-op if the lease is no longer ours."""
        values = {
            "lease_token": None,
            "lease_expires_at": None,
            "next_due_at": next_due_at,
            "updated_at": now,
        }
        if processed:
            values["last_processed_at"] = now

        stmt = (
            update(Zone)
            .where(Zone.id == zone.id)
            .where(Zone.lease_token == zone.lease_token)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.session_scope() as session:
            result = await session.execute(stmt)

        if result.rowcount == 0:
            logger.warning(
                f"LEASE_LOST: zone {zone.postal_code} (id={zone.id}) was re-claimed "
                f"before release; leaving it to the new holder"
            )
            return False
        return True

    async def refresh_zone(self, zone: Zone, now: Optional[datetime] = None) -> ZoneRefresh:
        """Geocode, discover, persist, notify, release. Never raises for the zone's own failures."""
        now = now or utc_now_naive()

        try:
            location = await self.geocoder.resolve(zone.postal_code)
            if location is None:
                logger.warning(
                    f"ZONE_UNRESOLVED: {zone.postal_code} could not be geocoded; "
                    f"retrying in {self.geocode_retry}"
                )
                await self.release(zone, now + self.geocode_retry, now)
                return ZoneRefresh(ZoneOutcome.SKIPPED)

            places = await self.discovery.search(
                location.latitude,
                location.longitude,
                miles_to_meters(self.radius_miles),
                self.max_results,
            )
            await self.save_sources(zone, location, places)

        except Exception as e:
            if isinstance(e, SQLAlchemyError):
                error = f"zone {zone.postal_code}: persistence failed: {e}"
            else:
                error = f"zone {zone.postal_code}: {type(e).__name__}: {e}"
            logger.error(f"ZONE_BACKOFF: {error}; retrying in {self.backoff}", exc_info=True)
            await self.release(zone, now + self.backoff, now)
            return ZoneRefresh(ZoneOutcome.FAILED, error=error)

        # Nothing new to report when discovery came back empty
        if places:
            await self.notify_subscribers(zone)

        interval = timedelta(
            minutes=zone.refresh_interval_minutes or settings.zone_refresh_interval_minutes
        )
        await self.release(zone, now + interval, now, processed=True)
        logger.info(
            f"ZONE_REFRESHED: {zone.postal_code} ({location.city or '?'}, {location.region or '?'}) "
            f"{len(places)} dispensaries, next run {now + interval:%Y-%m-%d %H:%M}"
        )
        return ZoneRefresh(ZoneOutcome.PROCESSED, sources_found=len(places))

    async def save_sources(self, zone: Zone, location: GeoLocation, places) -> None:
        async with self.session_scope() as session:
            for place in places:
                source = await storage.upsert_source(
                    session,
                    place_id=place.place_id,
                    name=place.name,
                    latitude=place.latitude,
                    longitude=place.longitude,
                    address=place.address,
                    phone=place.phone,
                    website=place.website,
                    city=location.city,
                    postal_code=zone.postal_code,
                    region=location.region,
                )
                await storage.link_source_to_zone(session, zone.id, source.id)
            await storage.update_zone_location(
                session, zone.id, location.latitude, location.longitude,
                location.city, location.region,
            )

    async def notify_subscribers(self, zone: Zone) -> int:
        """Queue DEALS_READY for the zone's subscribers. Failures only log."""
        try:
            async with self.session_scope() as session:
                count = await storage.enqueue_zone_notifications(
                    session, zone.id, limit=settings.subscriber_query_limit
                )
        except Exception as e:
            logger.error(f"NOTIFY_FAILED: zone {zone.postal_code}: {e}", exc_info=True)
            return 0
        if count:
            logger.info(f"Queued notifications for {count} subscriber(s) of {zone.postal_code}")
        return count

    async def run_zone_batch(
        self, batch_size: Optional[int] = None, now: Optional[datetime] = None
    ) -> ZoneBatchResult:
        """Claim a batch and refresh each zone in turn."""
        zones = await self.claim_due_zones(batch_size, now)
        result = ZoneBatchResult(claimed=len(zones))

        for zone in zones:
            try:
                refresh = await self.refresh_zone(zone, now)
            except Exception as e:
                # Only reachable when the release itself failed; the lease expiry covers it
                error = f"zone {zone.postal_code}: release failed: {e}"
                logger.error(error, exc_info=True)
                refresh = ZoneRefresh(ZoneOutcome.FAILED, error=error)
            result.record(refresh)

        logger.info(
            f"Zone batch complete: claimed={result.claimed} processed={result.processed} "
            f"failed={result.failed} skipped={result.skipped}"
        )
        return result
