"""Probe outcome types shared by the executor, recorder and detector."""
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

STATUS_UP = "up"
STATUS_DOWN = "down"
STATUS_TIMEOUT = "timeout"
STATUS_ERROR = "error"
STATUS_UNKNOWN = "unknown"

# Statuses that count as the logical DOWN state
DOWN_STATUSES = frozenset({STATUS_DOWN, STATUS_TIMEOUT, STATUS_ERROR})


def logical_state(status: Optional[str]) -> str:
    """Collapse a raw status into ``up``, ``down`` or ``unknown``."""
    if status == STATUS_UP:
        return STATUS_UP
    if status in DOWN_STATUSES:
        return STATUS_DOWN
    return STATUS_UNKNOWN


@dataclass(frozen=True)
class CheckResult:
    """Result of one probe."""
    status: str  # up, down, timeout, error
    checked_at: datetime
    region: str
    response_time_ms: Optional[int] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    tls_days_remaining: Optional[int] = None
    keyword_found: Optional[bool] = None

    @property
    def is_up(self) -> bool:
        return self.status == STATUS_UP

    def evolve(self, **changes) -> "CheckResult":
        return replace(self, **changes)
