"""Database models."""
from .monitor import Monitor
from .monitor_check import MonitorCheck
from .incident import Incident
from .daily_stat import DailyStat
from .alert_contact import AlertContact, MonitorContact
from .alert_log import AlertLog
from .ephemeral import EphemeralEntry

__all__ = [
    "Monitor",
    "MonitorCheck",
    "Incident",
    "DailyStat",
    "AlertContact",
    "MonitorContact",
    "AlertLog",
    "EphemeralEntry",
]
