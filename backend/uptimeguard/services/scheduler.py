"""Scheduler service - drives the monitoring core on a timer.

Jobs:
- run_checks: every tick, checks every due monitor
- process_notifications: every minute, delivers delayed notices and
  re-dispatches transitions the direct path missed
- aggregate_daily: 00:05 UTC, finalizes yesterday's statistics
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from .pipeline import MonitoringCore

logger = logging.getLogger(__name__)


class SchedulerService:
    """Service for scheduling periodic checks, notification sweeps and rollups."""

    def __init__(self, core: MonitoringCore):
        self.core = core
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the scheduler."""
        if self._running:
            return

        self.scheduler = AsyncIOScheduler(timezone="UTC")

        self.scheduler.add_job(
            self.run_checks,
            trigger=IntervalTrigger(seconds=settings.scheduler_tick_seconds),
            id="run_checks",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=settings.scheduler_tick_seconds,
        )

        self.scheduler.add_job(
            self.process_notifications,
            trigger=IntervalTrigger(minutes=1),
            id="process_notifications",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self.aggregate_daily,
            trigger=CronTrigger(hour=0, minute=5, timezone="UTC"),
            id="aggregate_daily",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._running = True
        logger.info(
            f"Scheduler started (tick={settings.scheduler_tick_seconds}s, "
            f"max_concurrent={settings.max_concurrent_checks})"
        )

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    async def run_checks(self):
        try:
            await self.core.pipeline.run_cycle()
        except Exception as e:
            logger.error(f"Error running checks: {e}")

    async def process_notifications(self):
        try:
            await self.core.dispatcher.process_pending()
        except Exception as e:
            logger.error(f"Error processing delayed notifications: {e}")
        try:
            await self.core.dispatcher.process_missed_transitions()
        except Exception as e:
            logger.error(f"Error processing missed transitions: {e}")

    async def aggregate_daily(self):
        try:
            await self.core.aggregator.aggregate_daily()
        except Exception as e:
            logger.error(f"Error calculating daily statistics: {e}")
