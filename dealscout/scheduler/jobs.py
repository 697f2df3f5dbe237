"""
APScheduler job definitions for zone refresh and deal ingestion.

For single-process deployments. The HTTP cron endpoints in main.py run the
same functions when an external timer is used instead. Both are safe to
overlap: zone claims are leased and deal inserts are hash-deduplicated.
"""

import asyncio
import logging
import time
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..analyst.extractor import InstructorDealParser
from ..common.geocoding import GoogleGeocoder
from ..common.places import GooglePlacesDiscovery
from ..config.settings import settings
from ..harvester.dispatcher import DispatchResult, IngestionDispatcher
from ..harvester.extraction import WebsiteDealExtractor
from .leases import ZoneBatchResult, ZoneLeaseScheduler
from .notifications import send_run_summary

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None


def build_zone_scheduler() -> ZoneLeaseScheduler:
    return ZoneLeaseScheduler(geocoder=GoogleGeocoder(), discovery=GooglePlacesDiscovery())


def build_dispatcher() -> IngestionDispatcher:
    return IngestionDispatcher(
        provider=WebsiteDealExtractor(parser=InstructorDealParser()),
        geocoder=GoogleGeocoder(),
    )


async def run_zone_refresh(
    zone_scheduler: ZoneLeaseScheduler,
    batch_size: Optional[int] = None,
    trigger: str = "scheduled",
) -> ZoneBatchResult:
    logger.info(f"Zone refresh started (trigger={trigger}, batch_size={batch_size})")
    return await zone_scheduler.run_zone_batch(batch_size)


async def run_ingestion(
    dispatcher: IngestionDispatcher,
    trigger: str = "scheduled",
) -> DispatchResult:
    logger.info(f"Deal ingestion started (trigger={trigger})")
    try:
        return await dispatcher.run()
    finally:
        close = getattr(dispatcher.provider, "close", None)
        if close is not None:
            await close()


async def scheduled_zone_refresh_job():
    """Timed zone refresh with a job-level timeout and webhook summary."""
    start = time.monotonic()
    try:
        result = await asyncio.wait_for(
            run_zone_refresh(build_zone_scheduler()),
            timeout=settings.job_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            f"SCHEDULER_HEALTH_ALERT: zone refresh timed out after "
            f"{settings.job_timeout_seconds // 60} minutes - leases will lapse"
        )
        await send_run_summary("Zone refresh", None, time.monotonic() - start, error="timed out")
        return
    except Exception as e:
        logger.error(f"Zone refresh job crashed: {e}", exc_info=True)
        await send_run_summary("Zone refresh", None, time.monotonic() - start, error=str(e))
        return
    await send_run_summary("Zone refresh", result.to_dict(), time.monotonic() - start)


async def scheduled_ingestion_job():
    """Timed deal ingestion with a job-level timeout and webhook summary."""
    start = time.monotonic()
    try:
        result = await asyncio.wait_for(
            run_ingestion(build_dispatcher()),
            timeout=settings.job_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            f"SCHEDULER_HEALTH_ALERT: ingestion timed out after "
            f"{settings.job_timeout_seconds // 60} minutes"
        )
        await send_run_summary("Deal ingestion", None, time.monotonic() - start, error="timed out")
        return
    except Exception as e:
        logger.error(f"Ingestion job crashed: {e}", exc_info=True)
        await send_run_summary("Deal ingestion", None, time.monotonic() - start, error=str(e))
        return
    await send_run_summary("Deal ingestion", result.to_dict(), time.monotonic() - start)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Initialize and start the APScheduler.

    Configures:
    - Zone refresh on settings.zone_refresh_cron
    - Deal ingestion on settings.ingestion_cron
    - Job store in memory (stateless; all state lives in the database)
    """
    global scheduler

    # Parse both expressions first so a typo fails before anything starts
    zone_trigger = CronTrigger.from_crontab(settings.zone_refresh_cron, timezone=settings.scheduler_timezone)
    ingestion_trigger = CronTrigger.from_crontab(settings.ingestion_cron, timezone=settings.scheduler_timezone)

    scheduler = AsyncIOScheduler(
        timezone=settings.scheduler_timezone,
        job_defaults={
            "coalesce": True,  # One catch-up run, not a burst
            "max_instances": 1,  # Only one instance at a time
            "misfire_grace_time": 600,  # 10 min grace for misfires
        }
    )

    scheduler.add_job(
        scheduled_zone_refresh_job,
        trigger=zone_trigger,
        id="zone_refresh",
        name=f"Zone refresh ({settings.zone_refresh_cron})",
        replace_existing=True,
    )
    scheduler.add_job(
        scheduled_ingestion_job,
        trigger=ingestion_trigger,
        id="deal_ingestion",
        name=f"Deal ingestion ({settings.ingestion_cron})",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started ({settings.scheduler_timezone})")

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.id} - next run: {job.next_run_time}")

    return scheduler


def shutdown_scheduler():
    """Shutdown the scheduler without waiting for running jobs.

    An interrupted zone refresh leaves its leases to expire on their own.
    """
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete")
    scheduler = None
