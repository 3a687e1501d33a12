"""Heartbeat push endpoint for passive monitors."""
import logging

from fastapi import APIRouter, Depends, HTTPException

from ..schemas.monitor import HeartbeatResponse, MonitorKind
from ..services.pipeline import MonitoringCore
from .deps import get_core, load_monitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/heartbeat", tags=["heartbeat"])


@router.post("/{monitor_id}", response_model=HeartbeatResponse)
@router.get("/{monitor_id}", response_model=HeartbeatResponse, include_in_schema=False)
async def receive_heartbeat(monitor_id: int, core: MonitoringCore = Depends(get_core)):
    """Record that the service behind a heartbeat monitor is alive."""
    monitor = await load_monitor(monitor_id, core)
    if monitor.kind != MonitorKind.HEARTBEAT.value:
        raise HTTPException(status_code=400, detail="Monitor is not a heartbeat monitor")
    if not monitor.is_active:
        raise HTTPException(status_code=409, detail="Monitor is paused")

    received_at = await core.executor.heartbeat.record(monitor.id, monitor.interval_seconds)
    logger.debug(f"Heartbeat received for monitor {monitor.id}")
    return HeartbeatResponse(monitor_id=monitor.id, received_at=received_at)
