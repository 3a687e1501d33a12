"""Statistics schemas for dashboards and status pages."""
from datetime import date
from typing import List, Optional
from pydantic import BaseModel


class ResponseTimeStats(BaseModel):
    avg: int = 0
    min: int = 0
    max: int = 0


class PeriodStats(BaseModel):
    """Uptime over a trailing period (1h, 24h, 7d, 30d)."""
    period: str
    total_checks: int
    up_checks: int
    down_checks: int
    uptime_percentage: float
    response_time: ResponseTimeStats


class TrendPoint(BaseModel):
    """One day of the uptime trend chart."""
    date: date
    uptime_percentage: Optional[float] = None
    avg_response_time_ms: Optional[float] = None
    downtime_incidents: int = 0

    class Config:
        from_attributes = True


class MonitorBands(BaseModel):
    total: int
    excellent: int  # 30d uptime >= 99.9
    good: int  # 99.0 <= 30d uptime < 99.9
    poor: int  # 30d uptime < 99.0


class GlobalAverages(BaseModel):
    uptime_30d: float
    response_time_30d: int


class GlobalActivity(BaseModel):
    down_checks_7d: int
    checks_24h: int


class GlobalStats(BaseModel):
    """Overview across all active monitors."""
    monitors: MonitorBands
    averages: GlobalAverages
    activity: GlobalActivity


class UptimeTrend(BaseModel):
    monitor_id: int
    days: int
    points: List[TrendPoint]
