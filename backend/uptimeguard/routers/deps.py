"""Shared router dependencies."""
from fastapi import HTTPException, Request

from ..models import Monitor
from ..services.pipeline import MonitoringCore


def get_core(request: Request) -> MonitoringCore:
    """The monitoring core built at startup."""
    return request.app.state.core


async def load_monitor(monitor_id: int, core: MonitoringCore) -> Monitor:
    monitor = await core.datastore.get_monitor(monitor_id)
    if not monitor:
        raise HTTPException(status_code=404, detail="Monitor not found")
    return monitor
