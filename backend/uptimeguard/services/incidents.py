"""Transition detection and the incident lifecycle.

Each monitor is a two-state machine, UP and DOWN, where DOWN covers the
down, timeout and error statuses. A monitor without history starts in
``unknown``; its first DOWN result opens an incident, its first UP result
is not a transition.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..models import Incident
from .datastore import Datastore
from .results import STATUS_DOWN, STATUS_UNKNOWN, STATUS_UP, CheckResult, logical_state

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """A change of logical state between consecutive checks of one monitor."""
    monitor_id: int
    previous_status: str  # raw status of the prior check, or "unknown"
    current_status: str  # raw status of the new check

    @property
    def went_down(self) -> bool:
        return logical_state(self.current_status) == STATUS_DOWN

    @property
    def recovered(self) -> bool:
        # unknown -> up is the first check of a monitor: notified, nothing to resolve
        return self.current_status == STATUS_UP and logical_state(self.previous_status) == STATUS_DOWN


def is_transition(previous_status: Optional[str], current_status: str) -> bool:
    return logical_state(previous_status) != logical_state(current_status)


class TransitionDetector:
    """Compares a freshly recorded result with the check before it."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def previous_status(self, monitor_id: int, check_id: Optional[int]) -> str:
        if check_id is not None:
            previous = await self.datastore.previous_check(monitor_id, check_id)
        else:
            # The new result was not stored, so the latest row is the prior one
            previous = await self.datastore.latest_check(monitor_id)
        return previous.status if previous else STATUS_UNKNOWN

    async def detect(self, monitor_id: int, result: CheckResult, check_id: Optional[int]) -> Optional[Transition]:
        last_status = await self.previous_status(monitor_id, check_id)
        if not is_transition(last_status, result.status):
            return None

        logger.info(f"Status change for monitor {monitor_id}: {last_status} -> {result.status}")
        return Transition(
            monitor_id=monitor_id,
            previous_status=last_status,
            current_status=result.status,
        )


class IncidentManager:
    """Opens an incident on the way down and closes it on recovery."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def apply(self, transition: Transition, result: CheckResult) -> Optional[Incident]:
        if transition.went_down:
            return await self.open(transition.monitor_id, result)
        if transition.recovered:
            return await self.resolve(transition.monitor_id, result)
        return None

    async def open(self, monitor_id: int, result: CheckResult) -> Incident:
        cause = result.error_message or f"Monitor status: {result.status}"
        incident, created = await self.datastore.open_incident(monitor_id, result.checked_at, cause)
        if not created:
            logger.warning(
                f"Monitor {monitor_id} already has open incident {incident.id}; not opening another"
            )
        else:
            logger.info(f"Opened incident {incident.id} for monitor {monitor_id}: {cause}")
        return incident

    async def resolve(self, monitor_id: int, result: CheckResult) -> Optional[Incident]:
        incident = await self.datastore.close_open_incident(monitor_id, result.checked_at)
        if incident is None:
            logger.warning(f"Monitor {monitor_id} recovered without an open incident")
            return None

        logger.info(f"Resolved incident {incident.id} for monitor {monitor_id} after {incident.duration_seconds}s")
        return incident
