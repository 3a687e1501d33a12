"""Pydantic schemas for the probe core and the API layer."""
from .monitor import (
    AuthType,
    CheckResultResponse,
    HeartbeatResponse,
    KeywordType,
    MonitorConfig,
    MonitorKind,
    MonitorSnapshot,
    MonitorTestResponse,
)
from .statistics import (
    GlobalStats,
    PeriodStats,
    TrendPoint,
    UptimeTrend,
)

__all__ = [
    "AuthType",
    "CheckResultResponse",
    "HeartbeatResponse",
    "KeywordType",
    "MonitorConfig",
    "MonitorKind",
    "MonitorSnapshot",
    "MonitorTestResponse",
    "GlobalStats",
    "PeriodStats",
    "TrendPoint",
    "UptimeTrend",
]
