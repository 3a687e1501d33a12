"""Monitoring pipeline - one probe cycle over every due monitor.

Per monitor the stages run strictly in order: execute, record, detect,
incident, dispatch. Monitors run concurrently under a semaphore; the same
monitor never runs twice at once because each cycle holds that monitor's
lease.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import settings
from ..errors import ConfigValidationError
from ..models import Incident, Monitor
from ..schemas.monitor import MonitorConfig, MonitorSnapshot
from ..utils.timeutils import utcnow
from .alerter import DispatchReport, NotificationDispatcher
from .checker import ProbeExecutor
from .datastore import Datastore
from .incidents import IncidentManager, Transition, TransitionDetector
from .kv_store import EphemeralStore
from .recorder import ResultRecorder
from .results import CheckResult
from .statistics import StatsAggregator
from .transport import Transport

logger = logging.getLogger(__name__)

STAGE_PROBE = "probe"
STAGE_RECORD = "record"
STAGE_STATS = "stats"
STAGE_TRANSITION = "transition"
STAGE_NOTIFY = "notify"


@dataclass
class CycleError:
    """A failure captured while running one monitor's cycle."""
    monitor_id: int
    stage: str
    error: Exception


@dataclass
class MonitorOutcome:
    monitor_id: int
    result: Optional[CheckResult] = None
    check_id: Optional[int] = None
    transition: Optional[Transition] = None
    incident: Optional[Incident] = None
    dispatch: Optional[DispatchReport] = None


@dataclass
class CycleReport:
    """What one ``run_cycle`` did, including every captured error."""
    started_at: datetime
    outcomes: List[MonitorOutcome] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)  # lease already held
    errors: List[CycleError] = field(default_factory=list)

    @property
    def checked(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.result is not None)

    def errors_for(self, monitor_id: int) -> List[CycleError]:
        return [error for error in self.errors if error.monitor_id == monitor_id]


class MonitorLeases:
    """One ``asyncio.Lock`` per monitor id, taken without waiting."""

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}

    def lock_for(self, monitor_id: int) -> asyncio.Lock:
        lock = self._locks.get(monitor_id)
        if lock is None:
            lock = self._locks[monitor_id] = asyncio.Lock()
        return lock

    def is_held(self, monitor_id: int) -> bool:
        return self.lock_for(monitor_id).locked()


class MonitoringPipeline:
    """Wires the probe executor, recorder, detector, incident manager and dispatcher."""

    def __init__(
        self,
        datastore: Datastore,
        executor: ProbeExecutor,
        dispatcher: NotificationDispatcher,
        max_concurrency: Optional[int] = None,
    ):
        self.datastore = datastore
        self.executor = executor
        self.recorder = ResultRecorder(datastore)
        self.detector = TransitionDetector(datastore)
        self.incidents = IncidentManager(datastore)
        self.dispatcher = dispatcher
        self.max_concurrency = max_concurrency or settings.max_concurrent_checks
        self.leases = MonitorLeases()

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """Check every due monitor and wait for all of them to settle."""
        now = now or utcnow()
        report = CycleReport(started_at=now)

        monitors = await self.datastore.list_due_monitors(now)
        if not monitors:
            return report

        logger.debug(f"Checking {len(monitors)} due monitors")
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def check_with_limit(monitor: Monitor):
            async with semaphore:
                await self._run_leased(monitor, report)

        results = await asyncio.gather(
            *[check_with_limit(monitor) for monitor in monitors],
            return_exceptions=True,
        )
        for monitor, outcome in zip(monitors, results):
            if isinstance(outcome, Exception):
                logger.error(f"Unhandled error checking monitor {monitor.id}: {outcome}")
                report.errors.append(CycleError(monitor.id, STAGE_PROBE, outcome))

        if report.errors:
            logger.warning(f"Cycle finished with {len(report.errors)} errors across {len(monitors)} monitors")
        return report

    async def run_monitor(self, monitor: Monitor) -> CycleReport:
        """Run one monitor's cycle right now, regardless of its interval."""
        report = CycleReport(started_at=utcnow())
        await self._run_leased(monitor, report)
        return report

    async def _run_leased(self, monitor: Monitor, report: CycleReport):
        if self.leases.is_held(monitor.id):
            logger.warning(f"Monitor {monitor.id} is still being checked; skipping this cycle")
            report.skipped.append(monitor.id)
            return

        async with self.leases.lock_for(monitor.id):
            outcome = MonitorOutcome(monitor_id=monitor.id)
            report.outcomes.append(outcome)
            await self._run_stages(monitor, outcome, report)

    async def _run_stages(self, monitor: Monitor, outcome: MonitorOutcome, report: CycleReport):
        def fail(stage: str, error: Exception):
            report.errors.append(CycleError(monitor.id, stage, error))

        # Probe
        try:
            config = MonitorConfig.model_validate(monitor)
            result = await self.executor.execute(config)
        except ValidationError as e:
            logger.error(f"Invalid configuration for monitor {monitor.id}: {e}")
            fail(STAGE_PROBE, ConfigValidationError(str(e)))
            return
        except ConfigValidationError as e:
            logger.error(f"Rejected check for monitor {monitor.id}: {e}")
            fail(STAGE_PROBE, e)
            return
        outcome.result = result
        logger.debug(f"Monitor {monitor.name}: {result.status}")

        # Record
        try:
            recorded = await self.recorder.record(monitor.id, result)
        except Exception as e:
            logger.error(f"Error saving check result for monitor {monitor.id}: {e}")
            fail(STAGE_RECORD, e)
        else:
            outcome.check_id = recorded.check_id
            if recorded.stats_error is not None:
                fail(STAGE_STATS, recorded.stats_error)

        # Detect and apply
        try:
            transition = await self.detector.detect(monitor.id, result, outcome.check_id)
        except Exception as e:
            logger.error(f"Error detecting status change for monitor {monitor.id}: {e}")
            fail(STAGE_TRANSITION, e)
            return
        if transition is None:
            return
        outcome.transition = transition

        try:
            outcome.incident = await self.incidents.apply(transition, result)
        except Exception as e:
            logger.error(f"Error updating incident for monitor {monitor.id}: {e}")
            fail(STAGE_TRANSITION, e)

        # Notify
        try:
            outcome.dispatch = await self.dispatcher.dispatch(
                MonitorSnapshot.model_validate(monitor),
                transition.current_status,
                transition.previous_status,
                result=result,
                check_id=outcome.check_id,
            )
        except Exception as e:
            logger.error(f"Error sending notifications for monitor {monitor.id}: {e}")
            fail(STAGE_NOTIFY, e)
            return
        for error in outcome.dispatch.errors:
            fail(STAGE_NOTIFY, error)


@dataclass
class MonitoringCore:
    """Everything the scheduler and API layer need, built over one database."""
    datastore: Datastore
    kv_store: EphemeralStore
    executor: ProbeExecutor
    dispatcher: NotificationDispatcher
    pipeline: MonitoringPipeline
    aggregator: StatsAggregator


def build_core(session_factory: async_sessionmaker, transport: Optional[Transport] = None) -> MonitoringCore:
    transport = transport or Transport()
    datastore = Datastore(session_factory)
    kv_store = EphemeralStore(session_factory)
    executor = ProbeExecutor(kv_store, transport=transport)
    dispatcher = NotificationDispatcher(datastore, kv_store, transport=transport)
    return MonitoringCore(
        datastore=datastore,
        kv_store=kv_store,
        executor=executor,
        dispatcher=dispatcher,
        pipeline=MonitoringPipeline(datastore, executor, dispatcher),
        aggregator=StatsAggregator(datastore),
    )
