"""
Storage pipeline for zones, dispensaries, and quality-gated deals.

All functions take an open AsyncSession and leave committing to the caller
(see database.get_session()).
"""

import logging
import re
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AcceptedDeal,
    Brand,
    NotificationOutbox,
    NOTIFICATION_DEALS_READY,
    ReviewFlag,
    Subscription,
    UpstreamSource,
    Zone,
    ZoneSource,
    ZoneStatus,
    utc_now_naive,
)

logger = logging.getLogger(__name__)


def _insert(session: AsyncSession, model):
    """Dialect-specific INSERT so ON CONFLICT is available on both backends."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


# =============================================================================
# Zones and subscriptions
# =============================================================================

async def get_or_create_zone(
    session: AsyncSession,
    postal_code: str,
    refresh_interval_minutes: Optional[int] = None,
) -> Zone:
    """Return the zone for a postal code, creating it due-now if missing."""
    postal_code = postal_code.strip()
    result = await session.execute(select(Zone).where(Zone.postal_code == postal_code))
    zone = result.scalar_one_or_none()
    if zone:
        return zone

    zone = Zone(postal_code=postal_code)
    if refresh_interval_minutes:
        zone.refresh_interval_minutes = refresh_interval_minutes
    session.add(zone)
    await session.flush()
    logger.info(f"Created zone {postal_code} (id={zone.id})")
    return zone


async def subscribe(
    session: AsyncSession,
    email: str,
    postal_code: str,
    radius_miles: float = 25.0,
) -> Subscription:
    """Subscribe an email to a postal code, creating the zone on first use.

    Re-subscribing updates the radius. A paused zone is re-activated.
    """
    zone = await get_or_create_zone(session, postal_code)
    if zone.status != ZoneStatus.ACTIVE.value:
        zone.status = ZoneStatus.ACTIVE.value
        zone.next_due_at = utc_now_naive()
        zone.updated_at = utc_now_naive()

    email = email.strip().lower()
    result = await session.execute(
        select(Subscription)
        .where(Subscription.email == email)
        .where(Subscription.zone_id == zone.id)
    )
    subscription = result.scalar_one_or_none()
    if subscription:
        subscription.radius_miles = radius_miles
    else:
        subscription = Subscription(
            email=email,
            zone_id=zone.id,
            postal_code=zone.postal_code,
            radius_miles=radius_miles,
        )
        session.add(subscription)
    await session.flush()
    return subscription


async def pause_zone(session: AsyncSession, postal_code: str) -> bool:
    """Soft-pause a zone. Returns False if no such zone exists."""
    result = await session.execute(select(Zone).where(Zone.postal_code == postal_code.strip()))
    zone = result.scalar_one_or_none()
    if not zone:
        return False
    zone.status = ZoneStatus.PAUSED.value
    zone.updated_at = utc_now_naive()
    await session.flush()
    logger.info(f"Paused zone {zone.postal_code}")
    return True


async def update_zone_location(
    session: AsyncSession,
    zone_id: int,
    latitude: float,
    longitude: float,
    city: Optional[str],
    region: Optional[str],
) -> None:
    """Cache the zone's geocode so later lookups skip the geocoder."""
    zone = await session.get(Zone, zone_id)
    if zone is None:
        return
    zone.latitude = latitude
    zone.longitude = longitude
    zone.city = city or zone.city
    zone.region = region or zone.region
    zone.updated_at = utc_now_naive()


# =============================================================================
# Dispensaries
# =============================================================================

async def upsert_source(
    session: AsyncSession,
    *,
    place_id: Optional[str],
    name: str,
    latitude: Optional[float],
    longitude: Optional[float],
    address: Optional[str] = None,
    phone: Optional[str] = None,
    website: Optional[str] = None,
    city: Optional[str] = None,
    postal_code: Optional[str] = None,
    region: Optional[str] = None,
) -> UpstreamSource:
    """Insert or update a dispensary.

    Matches on place_id when discovery supplied one, otherwise on name.
    On a match only the mutable fields (coordinates, contact) change, and a
    missing new value never erases a known one.
    """
    existing = None
    if place_id:
        result = await session.execute(
            select(UpstreamSource).where(UpstreamSource.place_id == place_id)
        )
        existing = result.scalar_one_or_none()
    if existing is None:
        result = await session.execute(
            select(UpstreamSource)
            .where(UpstreamSource.name == name)
            .order_by(UpstreamSource.id)
            .limit(1)
        )
        existing = result.scalar_one_or_none()
        # Never merge two different places that happen to share a name
        if existing is not None and place_id and existing.place_id and existing.place_id != place_id:
            existing = None

    now = utc_now_naive()
    if existing is not None:
        if place_id and not existing.place_id:
            existing.place_id = place_id
        existing.name = name or existing.name
        existing.address = address or existing.address
        existing.latitude = latitude if latitude is not None else existing.latitude
        existing.longitude = longitude if longitude is not None else existing.longitude
        existing.phone = phone or existing.phone
        existing.website = website or existing.website
        existing.city = existing.city or city
        existing.postal_code = existing.postal_code or postal_code
        existing.region = existing.region or region
        existing.updated_at = now
        await session.flush()
        return existing

    source = UpstreamSource(
        place_id=place_id,
        name=name,
        address=address,
        latitude=latitude,
        longitude=longitude,
        phone=phone,
        website=website,
        city=city,
        postal_code=postal_code,
        region=region,
        active=True,
    )
    session.add(source)
    await session.flush()
    logger.info(f"New dispensary discovered: {name} (id={source.id}, place_id={place_id})")
    return source


async def link_source_to_zone(session: AsyncSession, zone_id: int, dispensary_id: int) -> None:
    """Link a dispensary to a zone, refreshing last_seen_at if already linked."""
    now = utc_now_naive()
    stmt = _insert(session, ZoneSource).values(
        zone_id=zone_id,
        dispensary_id=dispensary_id,
        last_seen_at=now,
    ).on_conflict_do_update(
        index_elements=["zone_id", "dispensary_id"],
        set_={"last_seen_at": now},
    )
    await session.execute(stmt)


async def record_ingestion_outcome(
    session: AsyncSession,
    dispensary_id: int,
    success: bool,
    *,
    reward: float,
    penalty: float,
    floor: float,
) -> Optional[UpstreamSource]:
    """Update a dispensary's rolling reliability after an ingestion attempt.

    Read-modify-write on one row. Safe only because a dispatch run never
    schedules the same dispensary twice.
    """
    source = await session.get(UpstreamSource, dispensary_id)
    if source is None:
        return None

    current = source.reliability_score if source.reliability_score is not None else 1.0
    if success:
        new_score = min(1.0, current + reward)
    else:
        new_score = max(0.0, current - penalty)

    source.reliability_score = round(new_score, 4)
    source.last_ingested_at = utc_now_naive()
    source.updated_at = source.last_ingested_at
    if new_score < floor and source.active:
        source.active = False
        logger.warning(
            f"SOURCE_DEACTIVATED: {source.name} (id={source.id}) reliability "
            f"{current:.2f} -> {new_score:.2f} fell below {floor:.2f}"
        )
    await session.flush()
    return source


# =============================================================================
# Candidate source queries (ingestion)
# =============================================================================

async def get_subscription_areas(
    session: AsyncSession, limit: int = 1000
) -> List[Tuple[str, float, Optional[float], Optional[float]]]:
    """Subscribed postal codes with their largest radius and cached coordinates.

    Returns (postal_code, max_radius_miles, latitude, longitude) tuples.
    """
    subs = (
        select(Subscription.postal_code, Subscription.radius_miles, Subscription.zone_id)
        .limit(limit)
        .subquery()
    )
    stmt = (
        select(
            subs.c.postal_code,
            func.max(subs.c.radius_miles),
            func.max(Zone.latitude),
            func.max(Zone.longitude),
        )
        .join(Zone, Zone.id == subs.c.zone_id)
        .where(Zone.status == ZoneStatus.ACTIVE.value)
        .group_by(subs.c.postal_code)
        .order_by(subs.c.postal_code)
    )
    result = await session.execute(stmt)
    return [tuple(row) for row in result.all()]


async def get_active_sources(session: AsyncSession) -> List[UpstreamSource]:
    result = await session.execute(
        select(UpstreamSource)
        .where(UpstreamSource.active.is_(True))
        .order_by(UpstreamSource.id)
    )
    return list(result.scalars().all())


async def get_sources_in_subscribed_zones(session: AsyncSession) -> List[UpstreamSource]:
    """Active dispensaries linked to any zone that has at least one subscriber."""
    subscribed_zones = select(Subscription.zone_id).distinct()
    stmt = (
        select(UpstreamSource)
        .join(ZoneSource, ZoneSource.dispensary_id == UpstreamSource.id)
        .where(ZoneSource.zone_id.in_(subscribed_zones))
        .where(UpstreamSource.active.is_(True))
        .order_by(UpstreamSource.id)
        .distinct()
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# =============================================================================
# Notifications
# =============================================================================

async def enqueue_zone_notifications(
    session: AsyncSession,
    zone_id: int,
    notification_type: str = NOTIFICATION_DEALS_READY,
    limit: int = 1000,
) -> int:
    """Queue a notification for every subscriber of a zone.

    Idempotent: existing (email, zone, type) rows are left alone.
    Returns the number of subscribers considered.
    """
    result = await session.execute(
        select(Subscription.email)
        .where(Subscription.zone_id == zone_id)
        .order_by(Subscription.id)
        .limit(limit)
    )
    emails = list(result.scalars().all())
    if not emails:
        return 0

    rows = [
        {"email": email, "zone_id": zone_id, "type": notification_type, "status": "PENDING"}
        for email in emails
    ]
    stmt = _insert(session, NotificationOutbox).values(rows).on_conflict_do_nothing(
        index_elements=["email", "zone_id", "type"]
    )
    await session.execute(stmt)
    return len(rows)


# =============================================================================
# Deals
# =============================================================================

async def deal_hash_exists(
    session: AsyncSession, dispensary_name: str, deal_date: date, identity_hash: str
) -> bool:
    """Exact duplicate check: same source, same day, same identity hash."""
    result = await session.execute(
        select(AcceptedDeal.id)
        .where(AcceptedDeal.dispensary_name == dispensary_name)
        .where(AcceptedDeal.deal_date == deal_date)
        .where(AcceptedDeal.identity_hash == identity_hash)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_recent_prices_for_title(
    session: AsyncSession,
    dispensary_name: str,
    normalized_title: str,
    deal_date: date,
    window_days: int,
) -> List[str]:
    """Price texts of same-titled deals from this source in the trailing window."""
    result = await session.execute(
        select(AcceptedDeal.price_text)
        .where(AcceptedDeal.dispensary_name == dispensary_name)
        .where(AcceptedDeal.normalized_title == normalized_title)
        .where(AcceptedDeal.deal_date >= deal_date - timedelta(days=window_days))
        .where(AcceptedDeal.deal_date <= deal_date)
    )
    return list(result.scalars().all())


async def insert_deal(session: AsyncSession, deal: AcceptedDeal) -> Optional[int]:
    """Insert a deal, returning its id, or None if the identity already exists.

    The unique (source, date, hash) constraint catches duplicates that slip
    past the read-side checks when two writers race.
    """
    values = deal.model_dump(exclude={"id"})
    stmt = (
        _insert(session, AcceptedDeal)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["dispensary_name", "deal_date", "identity_hash"])
        .returning(AcceptedDeal.id)
    )
    result = await session.execute(stmt)
    deal_id = result.scalar_one_or_none()
    if deal_id is not None:
        deal.id = deal_id
    return deal_id


async def create_review_flag(
    session: AsyncSession, deal_id: int, reason: str, notes: Optional[str] = None
) -> ReviewFlag:
    flag = ReviewFlag(deal_id=deal_id, reason=reason, notes=notes)
    session.add(flag)
    await session.flush()
    return flag


def normalize_brand_name(name: str) -> str:
    """Lowercase and strip everything but letters and digits."""
    return re.sub(r"[^a-z0-9]", "", name.lower().strip())


async def find_or_create_brand(session: AsyncSession, name: Optional[str]) -> Optional[int]:
    """Return the id of the brand with this normalized name, creating it if needed."""
    if not name or not name.strip():
        return None
    normalized = normalize_brand_name(name)
    if not normalized:
        return None

    stmt = _insert(session, Brand).values(
        name=name.strip(),
        normalized_name=normalized,
        created_at=utc_now_naive(),
    ).on_conflict_do_nothing(index_elements=["normalized_name"])
    await session.execute(stmt)

    result = await session.execute(select(Brand.id).where(Brand.normalized_name == normalized))
    return result.scalar_one_or_none()


async def get_brand_ids(session: AsyncSession, names: Iterable[str]) -> List[int]:
    normalized = {normalize_brand_name(n) for n in names if n and n.strip()}
    if not normalized:
        return []
    result = await session.execute(select(Brand.id).where(Brand.normalized_name.in_(normalized)))
    return list(result.scalars().all())


# =============================================================================
# Read surface
# =============================================================================

async def get_visible_deals(
    session: AsyncSession,
    as_of: date,
    freshness_days: int,
    categories: Optional[List[str]] = None,
    brand_ids: Optional[List[int]] = None,
    dispensary_names: Optional[List[str]] = None,
    limit: int = 100,
) -> List[AcceptedDeal]:
    """Accepted, review-clean deals in the trailing freshness window."""
    stmt = (
        select(AcceptedDeal)
        .where(AcceptedDeal.is_valid.is_(True))
        .where(AcceptedDeal.needs_review.is_(False))
        .where(AcceptedDeal.deal_date >= as_of - timedelta(days=freshness_days))
        .where(AcceptedDeal.deal_date <= as_of)
    )
    if categories:
        stmt = stmt.where(AcceptedDeal.category.in_(categories))
    if brand_ids is not None:
        stmt = stmt.where(AcceptedDeal.brand_id.in_(brand_ids))
    if dispensary_names is not None:
        stmt = stmt.where(AcceptedDeal.dispensary_name.in_(dispensary_names))
    stmt = stmt.order_by(AcceptedDeal.created_at.desc(), AcceptedDeal.id).limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_zone_source_names(session: AsyncSession, postal_code: str) -> Optional[List[str]]:
    """Names of active dispensaries linked to a postal code's zone.

    Returns None when there is no zone for the postal code.
    """
    zone_result = await session.execute(
        select(Zone.id).where(Zone.postal_code == postal_code.strip())
    )
    zone_id = zone_result.scalar_one_or_none()
    if zone_id is None:
        return None
    result = await session.execute(
        select(UpstreamSource.name)
        .join(ZoneSource, ZoneSource.dispensary_id == UpstreamSource.id)
        .where(ZoneSource.zone_id == zone_id)
        .where(UpstreamSource.active.is_(True))
        .distinct()
    )
    return list(result.scalars().all())


async def get_source_coordinates(
    session: AsyncSession, names: Iterable[str]
) -> Dict[str, Tuple[float, float]]:
    """Map dispensary name -> (latitude, longitude) for names with known coordinates."""
    names = list({n for n in names if n})
    if not names:
        return {}
    result = await session.execute(
        select(UpstreamSource.name, UpstreamSource.latitude, UpstreamSource.longitude)
        .where(UpstreamSource.name.in_(names))
        .where(UpstreamSource.latitude.is_not(None))
        .where(UpstreamSource.longitude.is_not(None))
    )
    coords: Dict[str, Tuple[float, float]] = {}
    for name, lat, lng in result.all():
        coords.setdefault(name, (lat, lng))
    return coords


async def get_zone_by_postal_code(session: AsyncSession, postal_code: str) -> Optional[Zone]:
    result = await session.execute(select(Zone).where(Zone.postal_code == postal_code.strip()))
    return result.scalar_one_or_none()


def today_utc() -> date:
    return utc_now_naive().date()
