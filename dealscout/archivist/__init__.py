"""Database models and storage utilities."""

from .models import (
    Zone,
    ZoneStatus,
    UpstreamSource,
    ZoneSource,
    Subscription,
    NotificationOutbox,
    Brand,
    AcceptedDeal,
    ReviewFlag,
    utc_now_naive,
)
from .database import get_session, get_db, init_db, close_db
from .storage import get_or_create_zone, subscribe, pause_zone, get_visible_deals

__all__ = [
    "Zone",
    "ZoneStatus",
    "UpstreamSource",
    "ZoneSource",
    "Subscription",
    "NotificationOutbox",
    "Brand",
    "AcceptedDeal",
    "ReviewFlag",
    "utc_now_naive",
    "get_session",
    "get_db",
    "init_db",
    "close_db",
    "get_or_create_zone",
    "subscribe",
    "pause_zone",
    "get_visible_deals",
]
