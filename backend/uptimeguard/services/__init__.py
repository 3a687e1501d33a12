"""Services for probing, recording, alerting, statistics and scheduling."""
from .alerter import NotificationDispatcher
from .checker import ProbeExecutor
from .datastore import Datastore
from .kv_store import EphemeralStore
from .pipeline import MonitoringCore, MonitoringPipeline, build_core
from .recorder import ResultRecorder
from .scheduler import SchedulerService
from .statistics import StatsAggregator

__all__ = [
    "Datastore",
    "EphemeralStore",
    "MonitoringCore",
    "MonitoringPipeline",
    "NotificationDispatcher",
    "ProbeExecutor",
    "ResultRecorder",
    "SchedulerService",
    "StatsAggregator",
    "build_core",
]
