"""Statistics service - nightly rollups, rolling summaries and read-side stats."""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..errors import PersistenceError
from ..models import DailyStat, Monitor, MonitorCheck
from ..schemas.statistics import (
    GlobalActivity,
    GlobalAverages,
    GlobalStats,
    MonitorBands,
    PeriodStats,
    ResponseTimeStats,
    TrendPoint,
    UptimeTrend,
)
from ..utils.db_utils import retry_transient
from ..utils.timeutils import day_bounds, utcnow
from .datastore import Datastore
from .results import DOWN_STATUSES, STATUS_UP

logger = logging.getLogger(__name__)

PERIODS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_PERIOD = "24h"


@dataclass
class AggregationReport:
    """Outcome of one ``aggregate_daily`` run."""
    day: date
    skipped: bool = False
    monitors: int = 0
    purged_checks: int = 0
    purged_stats: int = 0
    errors: List[Tuple[Optional[int], PersistenceError]] = field(default_factory=list)  # None: not tied to one monitor


def calculate_downtime(checks: Sequence) -> Tuple[int, int]:
    """Downtime minutes and number of down runs in time-ordered ``checks``.

    A run still open at the end is charged up to the last observed check.
    """
    total_seconds = 0.0
    incidents = 0
    run_start: Optional[datetime] = None

    for check in checks:
        if check.status != STATUS_UP:
            if run_start is None:
                run_start = check.checked_at
                incidents += 1
        elif run_start is not None:
            total_seconds += (check.checked_at - run_start).total_seconds()
            run_start = None

    if run_start is not None and checks:
        total_seconds += (checks[-1].checked_at - run_start).total_seconds()

    return round(total_seconds / 60), incidents


def summarize_day(checks: Sequence) -> dict:
    """Exact ``DailyStat`` values for one day of time-ordered checks."""
    total = len(checks)
    up = sum(1 for check in checks if check.status == STATUS_UP)
    samples = [
        check.response_time_ms
        for check in checks
        if check.status == STATUS_UP and check.response_time_ms is not None
    ]
    downtime_minutes, downtime_incidents = calculate_downtime(checks)

    return {
        "total_checks": total,
        "successful_checks": up,
        "down_checks": total - up,
        "uptime_percentage": round(up / total * 100, 2) if total else 0.0,
        "avg_response_time_ms": round(sum(samples) / len(samples), 2) if samples else None,
        "min_response_time_ms": min(samples) if samples else None,
        "max_response_time_ms": max(samples) if samples else None,
        "response_samples": len(samples),
        "downtime_minutes": downtime_minutes,
        "downtime_incidents": downtime_incidents,
    }


class StatsAggregator:
    """Recomputes daily rollups from raw checks and keeps monitor summaries fresh."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore
        self.session_factory = datastore.session_factory

    async def _run(self, what: str, operation):
        async def _attempt():
            async with self.session_factory() as session:
                return await operation(session)

        return await retry_transient(_attempt, what)

    async def aggregate_daily(self, day: Optional[date] = None, force: bool = False) -> AggregationReport:
        """Finalize ``DailyStat`` rows for ``day`` (yesterday by default).

        A day that already has finalized rows is skipped unless ``force``.
        """
        day = day or (utcnow().date() - timedelta(days=1))
        report = AggregationReport(day=day)

        if not force and await self._is_finalized(day):
            logger.info(f"Statistics for {day} already calculated, skipping")
            report.skipped = True
            return report

        logger.info(f"Calculating daily statistics for {day}")
        for monitor_id in await self._active_monitor_ids():
            try:
                if await self._aggregate_monitor(monitor_id, day):
                    report.monitors += 1
            except PersistenceError as e:
                logger.error(f"Error calculating stats for monitor {monitor_id}: {e}")
                report.errors.append((monitor_id, e))

        try:
            report.purged_checks, report.purged_stats = await self.purge_old_data(day)
        except PersistenceError as e:
            logger.error(f"Error purging data older than the retention window: {e}")
            report.errors.append((None, e))
        try:
            await self.update_monitor_summaries(day)
        except PersistenceError as e:
            logger.error(f"Error updating monitor summaries: {e}")
            report.errors.append((None, e))
        logger.info(f"Daily statistics for {day} completed: {report.monitors} monitors")
        return report

    async def _is_finalized(self, day: date) -> bool:
        async def _count(session: AsyncSession):
            result = await session.execute(
                select(func.count(DailyStat.id)).where(
                    DailyStat.date == day,
                    DailyStat.finalized_at.is_not(None),
                )
            )
            return result.scalar_one()

        return await self._run(f"check finalized stats for {day}", _count) > 0

    async def _active_monitor_ids(self) -> List[int]:
        async def _ids(session: AsyncSession):
            result = await session.execute(
                select(Monitor.id).where(Monitor.is_active.is_(True)).order_by(Monitor.id)
            )
            return list(result.scalars().all())

        return await self._run("list active monitor ids", _ids)

    async def checks_for_day(self, monitor_id: int, day: date) -> List[MonitorCheck]:
        start, end = day_bounds(day)

        async def _checks(session: AsyncSession):
            result = await session.execute(
                select(MonitorCheck)
                .where(
                    MonitorCheck.monitor_id == monitor_id,
                    MonitorCheck.checked_at >= start,
                    MonitorCheck.checked_at < end,
                )
                .order_by(MonitorCheck.checked_at, MonitorCheck.id)
            )
            return list(result.scalars().all())

        return await self._run(f"load checks for monitor {monitor_id}", _checks)

    async def _aggregate_monitor(self, monitor_id: int, day: date) -> bool:
        checks = await self.checks_for_day(monitor_id, day)
        if not checks:
            return False

        values = summarize_day(checks)
        values["finalized_at"] = utcnow()
        await self.datastore.replace_daily_stat(monitor_id, day, values)
        return True

    async def purge_old_data(self, day: date) -> Tuple[int, int]:
        """Drop checks and daily rows older than the retention window before ``day``."""
        cutoff_day = day - timedelta(days=settings.retention_days)
        cutoff, _ = day_bounds(cutoff_day)

        async def _purge(session: AsyncSession):
            checks = await session.execute(delete(MonitorCheck).where(MonitorCheck.checked_at < cutoff))
            stats = await session.execute(delete(DailyStat).where(DailyStat.date < cutoff_day))
            await session.commit()
            return checks.rowcount or 0, stats.rowcount or 0

        purged_checks, purged_stats = await self._run("purge old statistics", _purge)
        if purged_checks or purged_stats:
            logger.info(f"Purged {purged_checks} checks and {purged_stats} daily stats before {cutoff_day}")
        return purged_checks, purged_stats

    async def update_monitor_summaries(self, as_of: Optional[date] = None):
        """Refresh 7d/30d uptime and 30d response time on every active monitor."""
        as_of = as_of or utcnow().date()
        since_7d = as_of - timedelta(days=7)
        since_30d = as_of - timedelta(days=30)

        async def _update(session: AsyncSession):
            monitor_ids = (await session.execute(
                select(Monitor.id).where(Monitor.is_active.is_(True))
            )).scalars().all()

            for monitor_id in monitor_ids:
                window = (DailyStat.monitor_id == monitor_id, DailyStat.date <= as_of)
                uptime_30d, response_30d = (await session.execute(
                    select(
                        func.avg(DailyStat.uptime_percentage),
                        func.avg(DailyStat.avg_response_time_ms),
                    ).where(*window, DailyStat.date >= since_30d)
                )).one()
                uptime_7d = (await session.execute(
                    select(func.avg(DailyStat.uptime_percentage)).where(*window, DailyStat.date >= since_7d)
                )).scalar_one()

                await session.execute(
                    update(Monitor)
                    .where(Monitor.id == monitor_id)
                    .values(
                        uptime_7d=round(uptime_7d if uptime_7d is not None else 100.0, 2),
                        uptime_30d=round(uptime_30d if uptime_30d is not None else 100.0, 2),
                        avg_response_time_30d=round(response_30d or 0),
                        stats_updated_at=utcnow(),
                    )
                )
            await session.commit()
            return len(monitor_ids)

        updated = await self._run("update monitor summaries", _update)
        logger.info(f"Updated summary statistics for {updated} monitors")

    # Read side

    async def calculate_period_stats(self, monitor_id: int, period: str, now: Optional[datetime] = None) -> PeriodStats:
        if period not in PERIODS:
            period = DEFAULT_PERIOD
        since = (now or utcnow()) - PERIODS[period]
        is_up = MonitorCheck.status == STATUS_UP
        up_time = case((is_up, MonitorCheck.response_time_ms))

        async def _stats(session: AsyncSession):
            result = await session.execute(
                select(
                    func.count(MonitorCheck.id),
                    func.count(case((is_up, 1))),
                    func.avg(up_time),
                    func.min(up_time),
                    func.max(up_time),
                ).where(MonitorCheck.monitor_id == monitor_id, MonitorCheck.checked_at >= since)
            )
            return result.one()

        total, up, avg_time, min_time, max_time = await self._run(f"period stats for monitor {monitor_id}", _stats)
        return PeriodStats(
            period=period,
            total_checks=total,
            up_checks=up,
            down_checks=total - up,
            uptime_percentage=round(up / total * 100, 2) if total else 0.0,
            response_time=ResponseTimeStats(
                avg=round(avg_time or 0),
                min=min_time or 0,
                max=max_time or 0,
            ),
        )

    async def get_uptime_trend(self, monitor_id: int, days: int = 30, today: Optional[date] = None) -> UptimeTrend:
        since = (today or utcnow().date()) - timedelta(days=days)

        async def _trend(session: AsyncSession):
            result = await session.execute(
                select(DailyStat)
                .where(DailyStat.monitor_id == monitor_id, DailyStat.date >= since)
                .order_by(DailyStat.date)
            )
            return list(result.scalars().all())

        rows = await self._run(f"uptime trend for monitor {monitor_id}", _trend)
        return UptimeTrend(
            monitor_id=monitor_id,
            days=days,
            points=[TrendPoint.model_validate(row) for row in rows],
        )

    async def calculate_global_stats(self, now: Optional[datetime] = None) -> GlobalStats:
        now = now or utcnow()

        async def _stats(session: AsyncSession):
            bands = (await session.execute(
                select(
                    func.count(Monitor.id),
                    func.count(case((Monitor.uptime_30d >= 99.9, 1))),
                    func.count(case(((Monitor.uptime_30d >= 99.0) & (Monitor.uptime_30d < 99.9), 1))),
                    func.count(case((Monitor.uptime_30d < 99.0, 1))),
                    func.avg(Monitor.uptime_30d),
                    func.avg(Monitor.avg_response_time_30d),
                ).where(Monitor.is_active.is_(True))
            )).one()

            active_checks = (
                select(func.count(MonitorCheck.id))
                .join(Monitor, Monitor.id == MonitorCheck.monitor_id)
                .where(Monitor.is_active.is_(True))
            )
            down_7d = (await session.execute(
                active_checks.where(
                    MonitorCheck.status.in_(sorted(DOWN_STATUSES)),
                    MonitorCheck.checked_at >= now - timedelta(days=7),
                )
            )).scalar_one()
            checks_24h = (await session.execute(
                active_checks.where(MonitorCheck.checked_at >= now - timedelta(hours=24))
            )).scalar_one()
            return bands, down_7d, checks_24h

        bands, down_7d, checks_24h = await self._run("global statistics", _stats)
        total, excellent, good, poor, avg_uptime, avg_response = bands
        return GlobalStats(
            monitors=MonitorBands(total=total, excellent=excellent, good=good, poor=poor),
            averages=GlobalAverages(
                uptime_30d=round(avg_uptime if avg_uptime is not None else 100.0, 2),
                response_time_30d=round(avg_response or 0),
            ),
            activity=GlobalActivity(down_checks_7d=down_7d, checks_24h=checks_24h),
        )
