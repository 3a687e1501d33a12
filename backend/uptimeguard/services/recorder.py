"""Result recorder - persists check results and feeds the running daily stats."""
import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import PersistenceError
from .datastore import Datastore
from .results import CheckResult

logger = logging.getLogger(__name__)


@dataclass
class RecordOutcome:
    """What got stored for one check."""
    check_id: Optional[int]
    stats_error: Optional[PersistenceError] = None


class ResultRecorder:
    """Stores one ``CheckResult`` and increments the day's ``DailyStat`` row."""

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def record(self, monitor_id: int, result: CheckResult) -> RecordOutcome:
        """Persist ``result``.

        Raises ``PersistenceError`` when the check row itself cannot be stored.
        A failed daily-stat increment is logged and returned on the outcome;
        the stored check row stays.
        """
        check_id = await self.datastore.insert_check(monitor_id, result)

        try:
            await self.datastore.upsert_daily_stat(monitor_id, result.checked_at.date(), result)
        except PersistenceError as e:
            logger.error(f"Error updating daily stats for monitor {monitor_id}: {e}")
            return RecordOutcome(check_id=check_id, stats_error=e)

        return RecordOutcome(check_id=check_id)
