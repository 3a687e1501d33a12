"""Read-only statistics API."""
from fastapi import APIRouter, Depends, Query

from ..schemas.statistics import GlobalStats, PeriodStats, UptimeTrend
from ..services.pipeline import MonitoringCore
from .deps import get_core, load_monitor

router = APIRouter(prefix="/api/statistics", tags=["statistics"])


@router.get("/global", response_model=GlobalStats)
async def get_global_stats(core: MonitoringCore = Depends(get_core)):
    return await core.aggregator.calculate_global_stats()


@router.get("/monitors/{monitor_id}", response_model=PeriodStats)
async def get_monitor_stats(
    monitor_id: int,
    period: str = Query("24h", description="1h, 24h, 7d or 30d"),
    core: MonitoringCore = Depends(get_core),
):
    """Uptime and response times over a trailing period. Unknown periods fall back to 24h."""
    await load_monitor(monitor_id, core)
    return await core.aggregator.calculate_period_stats(monitor_id, period)


@router.get("/monitors/{monitor_id}/trend", response_model=UptimeTrend)
async def get_monitor_trend(
    monitor_id: int,
    days: int = Query(30, ge=1, le=365),
    core: MonitoringCore = Depends(get_core),
):
    await load_monitor(monitor_id, core)
    return await core.aggregator.get_uptime_trend(monitor_id, days)
