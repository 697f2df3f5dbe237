"""
Scheduler module for zone refresh and deal ingestion.
"""
from .jobs import setup_scheduler, shutdown_scheduler, scheduler
from .leases import ZoneLeaseScheduler, ZoneBatchResult

__all__ = ["setup_scheduler", "shutdown_scheduler", "scheduler", "ZoneLeaseScheduler", "ZoneBatchResult"]
