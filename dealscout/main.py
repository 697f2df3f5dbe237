"""
DealScout - Main Application Entry Point

Ingests dispensary deal listings on a schedule, quality-gates them, and
serves the ranked result.

Endpoints:
- /cron/process-zones: lease and refresh due zones (shared-secret bearer)
- /cron/ingest-daily: extract and admit deals for every candidate dispensary
- /deals: accepted, review-clean deals near a postal code
- /subscriptions: follow a postal code (creates the zone on first use)
"""

import hmac
import logging
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .analyst.ranking import rank_deals, score_deals
from .archivist import storage
from .archivist.database import close_db, get_db
from .common.geocoding import Geocoder, GoogleGeocoder
from .common.maps_client import MapsAPIError, close_maps_client
from .config import settings
from .harvester.dispatcher import IngestionDispatcher
from .scheduler import jobs as scheduler_module
from .scheduler.jobs import (
    build_dispatcher,
    build_zone_scheduler,
    run_ingestion,
    run_zone_refresh,
    setup_scheduler,
    shutdown_scheduler,
)
from .scheduler.leases import ZoneLeaseScheduler

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ----- Cron Secret Security -----

bearer_scheme = HTTPBearer(auto_error=False)


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> str:
    """Require `Authorization: Bearer <cron secret>` on trigger endpoints."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Bearer token required")
    token = credentials.credentials
    if not any(hmac.compare_digest(token, secret) for secret in settings.valid_cron_secrets):
        raise HTTPException(status_code=401, detail="Invalid cron secret")
    return token


# ----- Collaborator dependencies (overridden in tests) -----

def get_zone_scheduler() -> ZoneLeaseScheduler:
    return build_zone_scheduler()


def get_dispatcher() -> IngestionDispatcher:
    return build_dispatcher()


def get_geocoder() -> Geocoder:
    return GoogleGeocoder()


def run_migrations():
    """Run Alembic migrations on startup."""
    logger.info("Running database migrations...")
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        timeout=120,
    )
    if result.returncode == 0:
        logger.info("Database migrations completed successfully")
    else:
        logger.error(f"Database migrations failed: {result.stderr.strip()}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting DealScout...")

    run_migrations()

    if settings.scheduler_enabled:
        try:
            setup_scheduler()
        except ValueError as e:
            # Bad cron expression or timezone in settings
            logger.error(f"Could not start scheduler: {e}")

    yield

    logger.info("Shutting down...")
    shutdown_scheduler()
    await close_db()
    await close_maps_client()


app = FastAPI(
    title="DealScout",
    description="Dispensary deal ingestion, quality gating and ranking",
    version="0.1.0",
    lifespan=lifespan,
)


# ----- Response Models -----

class ZoneBatchResponse(BaseModel):
    ok: bool
    claimed: int
    processed: int
    failed: int
    skipped: int
    errors: List[str] = Field(default_factory=list)


class IngestionResponse(BaseModel):
    ok: bool
    processed: int
    skipped: int
    failed: int
    deals_inserted: int
    dispensaries_processed: int
    errors: List[str] = Field(default_factory=list)


class DealResponse(BaseModel):
    id: int
    dispensary_name: str
    city: Optional[str] = None
    category: str
    title: str
    brand: Optional[str] = None
    product_name: Optional[str] = None
    price_text: str
    deal_date: date
    source_url: Optional[str] = None
    is_placeholder: bool = False
    distance_miles: Optional[float] = None


class DealsResponse(BaseModel):
    deals: List[DealResponse]
    count: int


class SubscriptionRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    postal_code: str = Field(min_length=3, max_length=16)
    radius_miles: float = Field(default=25.0, gt=0, le=100)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        return v


class SubscriptionResponse(BaseModel):
    email: str
    postal_code: str
    zone_id: int
    radius_miles: float


class HealthResponse(BaseModel):
    status: str
    database: str
    scheduler_running: bool


def split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


# ----- Endpoints -----

@app.get("/health", response_model=HealthResponse)
async def health_check(session: AsyncSession = Depends(get_db)):
    try:
        await session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        database = "unavailable"
    running = bool(scheduler_module.scheduler and scheduler_module.scheduler.running)
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        scheduler_running=running,
    )


@app.api_route("/cron/process-zones", methods=["GET", "POST"], response_model=ZoneBatchResponse)
async def process_zones(
    batch_size: Optional[int] = Query(None, description="Zones to claim (clamped to 1-50)"),
    _secret: str = Depends(verify_cron_secret),
    zone_scheduler: ZoneLeaseScheduler = Depends(get_zone_scheduler),
):
    """Claim and refresh a batch of due zones. 500 only if every claimed zone failed."""
    try:
        result = await run_zone_refresh(zone_scheduler, batch_size, trigger="http")
    except SQLAlchemyError as e:
        logger.error(f"Zone claim failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Zone claim failed")

    body = ZoneBatchResponse(ok=not result.total_failure, **result.to_dict())
    if result.total_failure:
        return JSONResponse(status_code=500, content=body.model_dump())
    return body


@app.api_route("/cron/ingest-daily", methods=["GET", "POST"], response_model=IngestionResponse)
async def ingest_daily(
    _secret: str = Depends(verify_cron_secret),
    dispatcher: IngestionDispatcher = Depends(get_dispatcher),
):
    """Run deal ingestion for every candidate dispensary. 500 only if all of them failed."""
    try:
        result = await run_ingestion(dispatcher, trigger="http")
    except SQLAlchemyError as e:
        logger.error(f"Ingestion could not start: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Ingestion failed")

    body = IngestionResponse(ok=not result.total_failure, **result.to_dict())
    if result.total_failure:
        return JSONResponse(status_code=500, content=body.model_dump())
    return body


@app.get("/deals", response_model=DealsResponse)
async def list_deals(
    postal_code: Optional[str] = Query(None, max_length=16),
    categories: Optional[str] = Query(None, description="Comma-separated category slugs"),
    brands: Optional[str] = Query(None, description="Comma-separated brand names"),
    as_of: Optional[date] = Query(None, description="Defaults to today (UTC)"),
    session: AsyncSession = Depends(get_db),
    geocoder: Geocoder = Depends(get_geocoder),
):
    """Fresh, review-clean deals, one per duplicate offer, nearest dispensary first."""
    as_of = as_of or storage.today_utc()
    category_list = [c.lower() for c in split_csv(categories)]
    brand_names = split_csv(brands)

    brand_ids = None
    if brand_names:
        brand_ids = await storage.get_brand_ids(session, brand_names)
        if not brand_ids:
            return DealsResponse(deals=[], count=0)

    origin = None
    dispensary_names = None
    if postal_code:
        zone = await storage.get_zone_by_postal_code(session, postal_code)
        if zone is not None:
            dispensary_names = await storage.get_zone_source_names(session, postal_code)
            if zone.latitude is not None and zone.longitude is not None:
                origin = (zone.latitude, zone.longitude)
        if origin is None:
            try:
                location = await geocoder.resolve(postal_code)
            except MapsAPIError as e:
                logger.warning(f"Could not geocode {postal_code} for ranking: {e}")
                location = None
            if location is not None:
                origin = (location.latitude, location.longitude)

    deals = await storage.get_visible_deals(
        session,
        as_of=as_of,
        freshness_days=settings.read_freshness_days,
        categories=category_list or None,
        brand_ids=brand_ids,
        dispensary_names=dispensary_names,
        limit=settings.read_limit,
    )
    coordinates = await storage.get_source_coordinates(session, {d.dispensary_name for d in deals})
    scored = score_deals(rank_deals(deals, origin, coordinates), origin, coordinates)

    return DealsResponse(
        deals=[
            DealResponse(
                id=item.deal.id,
                dispensary_name=item.deal.dispensary_name,
                city=item.deal.city,
                category=item.deal.category,
                title=item.deal.title,
                brand=item.deal.brand,
                product_name=item.deal.product_name,
                price_text=item.deal.price_text,
                deal_date=item.deal.deal_date,
                source_url=item.deal.source_url,
                is_placeholder=item.deal.is_placeholder,
                distance_miles=round(item.distance_miles, 1) if item.distance_miles is not None else None,
            )
            for item in scored
        ],
        count=len(scored),
    )


@app.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(
    request: SubscriptionRequest,
    session: AsyncSession = Depends(get_db),
):
    """Follow a postal code. The zone is created due-now on first subscription."""
    subscription = await storage.subscribe(
        session, request.email, request.postal_code, request.radius_miles
    )
    return SubscriptionResponse(
        email=subscription.email,
        postal_code=subscription.postal_code,
        zone_id=subscription.zone_id,
        radius_miles=subscription.radius_miles,
    )


@app.post("/zones/{postal_code}/pause")
async def pause_zone(
    postal_code: str,
    _secret: str = Depends(verify_cron_secret),
    session: AsyncSession = Depends(get_db),
):
    """Stop refreshing a zone. Zones are paused, never deleted."""
    if not await storage.pause_zone(session, postal_code):
        raise HTTPException(status_code=404, detail="Zone not found")
    return {"ok": True, "postal_code": postal_code}


# ----- CLI Runner -----

def run_server():
    """Run the FastAPI server."""
    import uvicorn
    uvicorn.run(
        "dealscout.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )


if __name__ == "__main__":
    run_server()
