"""Monitor actions API."""
from fastapi import APIRouter, Depends

from ..schemas.monitor import CheckResultResponse, MonitorTestResponse
from ..services.pipeline import MonitoringCore
from .deps import get_core, load_monitor

router = APIRouter(prefix="/api/monitors", tags=["monitors"])


@router.post("/{monitor_id}/test", response_model=MonitorTestResponse)
async def test_monitor(monitor_id: int, core: MonitoringCore = Depends(get_core)):
    """Check a monitor now through the full pipeline, notifications included."""
    monitor = await load_monitor(monitor_id, core)
    report = await core.pipeline.run_monitor(monitor)

    response = MonitorTestResponse(
        monitor_id=monitor.id,
        errors=[f"{error.stage}: {error.error}" for error in report.errors],
    )
    if not report.outcomes:
        response.errors.append("Monitor is already being checked")
        return response

    outcome = report.outcomes[0]
    if outcome.result is not None:
        response.result = CheckResultResponse.model_validate(outcome.result)
    response.check_id = outcome.check_id
    if outcome.transition is not None:
        response.transition = f"{outcome.transition.previous_status} -> {outcome.transition.current_status}"
    if outcome.dispatch is not None:
        response.notifications_sent = outcome.dispatch.sent
    return response
