"""
Database models using SQLModel (SQLAlchemy + Pydantic).

Schema:
- Zone: A postal-code catchment with its own refresh schedule and lease
- UpstreamSource: A dispensary discovered for one or more zones
- ZoneSource: Join table linking zones to the dispensaries found for them
- Subscription: A subscriber's interest in a zone
- NotificationOutbox: Pending DEALS_READY notices, one per (email, zone, type)
- Brand: Normalized brand names referenced by deals
- AcceptedDeal: A quality-gated deal
- ReviewFlag: Pending manual decision attached to a deal
"""

from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint, Index
from sqlmodel import SQLModel, Field


def utc_now_naive() -> datetime:
    """Return current UTC time as timezone-naive datetime.

    PostgreSQL TIMESTAMP WITHOUT TIME ZONE columns require naive datetimes.
    Using timezone-aware datetimes causes asyncpg DataError.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ZoneStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FIXED = "fixed"


NOTIFICATION_DEALS_READY = "DEALS_READY"


class Zone(SQLModel, table=True):
    """A geographic catchment keyed by postal code.

    A zone is claimable when it is ACTIVE, due, and either unleased or its
    lease has expired. Zones are paused, never deleted.
    """
    __tablename__ = "zones"
    __table_args__ = (
        Index("ix_zones_claimable", "status", "next_due_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    postal_code: str = Field(unique=True, index=True, max_length=16)
    status: str = Field(default=ZoneStatus.ACTIVE.value, max_length=16)

    # Scheduling
    next_due_at: Optional[datetime] = Field(default_factory=utc_now_naive)
    last_processed_at: Optional[datetime] = None
    refresh_interval_minutes: int = Field(default=360)

    # Lease (null token = unclaimed)
    lease_token: Optional[str] = Field(default=None, max_length=64)
    lease_expires_at: Optional[datetime] = None

    # Cached from the last successful geocode
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    city: Optional[str] = None
    region: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class UpstreamSource(SQLModel, table=True):
    """A dispensary that may yield deal data.

    place_id is the stable identifier from discovery; when it is missing the
    name is the dedup key.
    """
    __tablename__ = "dispensaries"

    id: Optional[int] = Field(default=None, primary_key=True)
    place_id: Optional[str] = Field(default=None, unique=True, index=True, max_length=255)
    name: str = Field(index=True, max_length=255)
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    phone: Optional[str] = Field(default=None, max_length=64)
    website: Optional[str] = Field(default=None, max_length=500)
    flyer_url: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = None
    postal_code: Optional[str] = Field(default=None, max_length=16)
    region: Optional[str] = Field(default=None, max_length=32)

    # Rolling reliability in [0, 1]; below the floor the source is deactivated
    reliability_score: float = Field(default=1.0)
    active: bool = Field(default=True, index=True)
    last_ingested_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)

    @property
    def has_extraction_target(self) -> bool:
        return bool(self.flyer_url or self.website)


class ZoneSource(SQLModel, table=True):
    """Join table: which dispensaries were found for which zones."""
    __tablename__ = "zone_dispensaries"
    __table_args__ = (
        UniqueConstraint("zone_id", "dispensary_id", name="uq_zone_dispensary"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    zone_id: int = Field(foreign_key="zones.id", index=True)
    dispensary_id: int = Field(foreign_key="dispensaries.id", index=True)
    last_seen_at: datetime = Field(default_factory=utc_now_naive)


class Subscription(SQLModel, table=True):
    """A subscriber following a zone."""
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("email", "zone_id", name="uq_subscription_email_zone"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, max_length=255)
    zone_id: int = Field(foreign_key="zones.id", index=True)
    postal_code: str = Field(max_length=16)
    radius_miles: float = Field(default=25.0)
    created_at: datetime = Field(default_factory=utc_now_naive)


class NotificationOutbox(SQLModel, table=True):
    """Pending notification for the email sender (out of process)."""
    __tablename__ = "notifications_outbox"
    __table_args__ = (
        UniqueConstraint("email", "zone_id", "type", name="uq_notification_email_zone_type"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(max_length=255)
    zone_id: int = Field(foreign_key="zones.id")
    type: str = Field(default=NOTIFICATION_DEALS_READY, max_length=32)
    status: str = Field(default="PENDING", max_length=16)
    created_at: datetime = Field(default_factory=utc_now_naive)


class Brand(SQLModel, table=True):
    """A product brand, matched by normalized name."""
    __tablename__ = "brands"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255)
    normalized_name: str = Field(unique=True, index=True, max_length=255)
    created_at: datetime = Field(default_factory=utc_now_naive)


class AcceptedDeal(SQLModel, table=True):
    """A persisted, quality-gated deal.

    identity_hash is sha256(source | normalized title | normalized price | date)
    and is unique per source per day. Ingestion never mutates a row after
    insert; review decisions happen out of process.
    """
    __tablename__ = "deals"
    __table_args__ = (
        UniqueConstraint(
            "dispensary_name", "deal_date", "identity_hash",
            name="uq_deals_source_date_hash",
        ),
        Index("ix_deals_source_title_date", "dispensary_name", "normalized_title", "deal_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    # Source attribution
    dispensary_id: Optional[int] = Field(default=None, foreign_key="dispensaries.id", index=True)
    dispensary_name: str = Field(max_length=255)
    city: Optional[str] = None
    source_url: Optional[str] = Field(default=None, max_length=500)
    deal_date: date = Field(index=True)

    # Extracted content
    category: str = Field(max_length=32, index=True)
    title: str
    normalized_title: str
    brand: Optional[str] = Field(default=None, max_length=255)
    product_name: Optional[str] = None
    brand_id: Optional[int] = Field(default=None, foreign_key="brands.id", index=True)
    price_text: str = Field(max_length=255)
    confidence: float = Field(default=1.0)

    # Quality gate
    identity_hash: str = Field(max_length=64, index=True)
    is_valid: bool = Field(default=True)
    needs_review: bool = Field(default=False, index=True)
    review_reason: Optional[str] = None
    is_placeholder: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utc_now_naive, index=True)


class ReviewFlag(SQLModel, table=True):
    """Links a deal to a pending manual decision."""
    __tablename__ = "deal_reviews"

    id: Optional[int] = Field(default=None, primary_key=True)
    deal_id: int = Field(foreign_key="deals.id", index=True)
    reason: str
    notes: Optional[str] = None
    status: str = Field(default=ReviewStatus.PENDING.value, max_length=16, index=True)
    created_at: datetime = Field(default_factory=utc_now_naive)
