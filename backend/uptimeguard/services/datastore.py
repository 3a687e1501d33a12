"""Datastore - durable rows the monitoring core reads and writes.

Each operation runs in its own short session so that one failed write never
rolls back another (a failed alert log must not undo the check row).
"""
import logging
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, case, cast, delete, func, select, Numeric
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import AlertContact, AlertLog, DailyStat, Incident, Monitor, MonitorCheck, MonitorContact
from ..utils.db_utils import retry_transient
from .results import STATUS_UP, CheckResult

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if session.bind.dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


class Datastore:
    """Async SQLAlchemy implementation of the core's storage boundary."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _run(self, what: str, operation):
        async def _attempt():
            async with self.session_factory() as session:
                return await operation(session)

        return await retry_transient(_attempt, what)

    # Monitors

    async def get_monitor(self, monitor_id: int) -> Optional[Monitor]:
        async def _get(session: AsyncSession):
            return await session.get(Monitor, monitor_id)

        return await self._run(f"load monitor {monitor_id}", _get)

    async def list_active_monitors(self) -> List[Monitor]:
        async def _list(session: AsyncSession):
            result = await session.execute(
                select(Monitor).where(Monitor.is_active.is_(True)).order_by(Monitor.id)
            )
            return list(result.scalars().all())

        return await self._run("list active monitors", _list)

    async def list_due_monitors(self, now: datetime) -> List[Monitor]:
        """Active monitors never checked, or checked at least one interval ago."""
        async def _list(session: AsyncSession):
            result = await session.execute(
                select(Monitor, func.max(MonitorCheck.checked_at).label("last_checked"))
                .outerjoin(MonitorCheck, Monitor.id == MonitorCheck.monitor_id)
                .where(Monitor.is_active.is_(True))
                .group_by(Monitor.id)
                .order_by(Monitor.id)
            )
            return result.all()

        rows = await self._run("list due monitors", _list)
        due = []
        for monitor, last_checked in rows:
            if last_checked is None or (now - last_checked).total_seconds() >= monitor.interval_seconds:
                due.append(monitor)
        return due

    # Checks

    async def insert_check(self, monitor_id: int, result: CheckResult) -> int:
        async def _insert(session: AsyncSession):
            row = MonitorCheck(
                monitor_id=monitor_id,
                status=result.status,
                response_time_ms=result.response_time_ms,
                status_code=result.status_code,
                error_message=result.error_message,
                checked_at=result.checked_at,
                region=result.region,
                tls_days_remaining=result.tls_days_remaining,
                keyword_found=result.keyword_found,
            )
            session.add(row)
            await session.commit()
            return row.id

        return await self._run(f"insert check for monitor {monitor_id}", _insert)

    async def latest_check(self, monitor_id: int) -> Optional[MonitorCheck]:
        async def _latest(session: AsyncSession):
            result = await session.execute(
                select(MonitorCheck)
                .where(MonitorCheck.monitor_id == monitor_id)
                .order_by(MonitorCheck.checked_at.desc(), MonitorCheck.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

        return await self._run(f"latest check for monitor {monitor_id}", _latest)

    async def previous_check(self, monitor_id: int, before_id: int) -> Optional[MonitorCheck]:
        """The check stored for ``monitor_id`` immediately before ``before_id``."""
        async def _previous(session: AsyncSession):
            result = await session.execute(
                select(MonitorCheck)
                .where(
                    MonitorCheck.monitor_id == monitor_id,
                    MonitorCheck.id < before_id,
                )
                .order_by(MonitorCheck.checked_at.desc(), MonitorCheck.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

        return await self._run(f"previous check for monitor {monitor_id}", _previous)

    # Daily stats

    async def upsert_daily_stat(self, monitor_id: int, day: date, result: CheckResult):
        """Fold one check into the running daily row in a single statement."""
        is_up = 1 if result.status == STATUS_UP else 0
        response_time = result.response_time_ms
        sample = 0 if response_time is None else 1

        async def _upsert(session: AsyncSession):
            insert = _insert_for(session)
            stmt = insert(DailyStat).values(
                monitor_id=monitor_id,
                date=day,
                total_checks=1,
                successful_checks=is_up,
                down_checks=1 - is_up,
                uptime_percentage=100.0 * is_up,
                avg_response_time_ms=None if response_time is None else float(response_time),
                min_response_time_ms=response_time,
                max_response_time_ms=response_time,
                response_samples=sample,
                downtime_minutes=0,
                downtime_incidents=0,
            )
            new = stmt.excluded
            old = DailyStat.__table__.c
            stmt = stmt.on_conflict_do_update(
                index_elements=["monitor_id", "date"],
                set_={
                    "total_checks": old.total_checks + 1,
                    "successful_checks": old.successful_checks + new.successful_checks,
                    "down_checks": old.down_checks + new.down_checks,
                    "response_samples": old.response_samples + new.response_samples,
                    "avg_response_time_ms": case(
                        (new.response_samples == 0, old.avg_response_time_ms),
                        else_=(
                            func.coalesce(old.avg_response_time_ms, 0.0) * old.response_samples
                            + new.avg_response_time_ms
                        ) / (old.response_samples + 1),
                    ),
                    "min_response_time_ms": case(
                        (new.min_response_time_ms.is_(None), old.min_response_time_ms),
                        (old.min_response_time_ms.is_(None), new.min_response_time_ms),
                        (new.min_response_time_ms < old.min_response_time_ms, new.min_response_time_ms),
                        else_=old.min_response_time_ms,
                    ),
                    "max_response_time_ms": case(
                        (new.max_response_time_ms.is_(None), old.max_response_time_ms),
                        (old.max_response_time_ms.is_(None), new.max_response_time_ms),
                        (new.max_response_time_ms > old.max_response_time_ms, new.max_response_time_ms),
                        else_=old.max_response_time_ms,
                    ),
                    "uptime_percentage": func.round(
                        cast(
                            (old.successful_checks + new.successful_checks) * 100.0 / (old.total_checks + 1),
                            Numeric(10, 4),
                        ),
                        2,
                    ),
                },
            )
            await session.execute(stmt)
            await session.commit()

        await self._run(f"upsert daily stat for monitor {monitor_id}", _upsert)

    async def replace_daily_stat(self, monitor_id: int, day: date, values: dict):
        """Overwrite the daily row with precisely computed values."""
        async def _replace(session: AsyncSession):
            insert = _insert_for(session)
            stmt = insert(DailyStat).values(monitor_id=monitor_id, date=day, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["monitor_id", "date"],
                set_={key: getattr(stmt.excluded, key) for key in values},
            )
            await session.execute(stmt)
            await session.commit()

        await self._run(f"replace daily stat for monitor {monitor_id}", _replace)

    async def get_daily_stat(self, monitor_id: int, day: date) -> Optional[DailyStat]:
        async def _get(session: AsyncSession):
            result = await session.execute(
                select(DailyStat).where(DailyStat.monitor_id == monitor_id, DailyStat.date == day)
            )
            return result.scalar_one_or_none()

        return await self._run(f"daily stat for monitor {monitor_id}", _get)

    # Incidents

    async def get_open_incident(self, monitor_id: int) -> Optional[Incident]:
        async def _get(session: AsyncSession):
            result = await session.execute(
                select(Incident).where(
                    Incident.monitor_id == monitor_id,
                    Incident.resolved_at.is_(None),
                )
            )
            return result.scalar_one_or_none()

        return await self._run(f"open incident for monitor {monitor_id}", _get)

    async def open_incident(self, monitor_id: int, started_at: datetime, cause: str) -> Tuple[Incident, bool]:
        """Open an incident unless one is already open.

        Returns the open incident and whether it was created by this call.
        """
        async def _open(session: AsyncSession):
            result = await session.execute(
                select(Incident).where(
                    Incident.monitor_id == monitor_id,
                    Incident.resolved_at.is_(None),
                )
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return existing, False

            incident = Incident(
                monitor_id=monitor_id,
                status="investigating",
                started_at=started_at,
                cause=cause,
            )
            session.add(incident)
            await session.commit()
            return incident, True

        return await self._run(f"open incident for monitor {monitor_id}", _open)

    async def close_open_incident(self, monitor_id: int, resolved_at: datetime) -> Optional[Incident]:
        async def _close(session: AsyncSession):
            result = await session.execute(
                select(Incident).where(
                    Incident.monitor_id == monitor_id,
                    Incident.resolved_at.is_(None),
                )
            )
            incident = result.scalar_one_or_none()
            if incident is None:
                return None

            incident.status = "resolved"
            incident.resolved_at = resolved_at
            incident.duration_seconds = max(0, int((resolved_at - incident.started_at).total_seconds()))
            await session.commit()
            return incident

        return await self._run(f"close incident for monitor {monitor_id}", _close)

    # Contacts and alert logs

    async def list_active_contacts(self, monitor_id: int) -> List[Tuple[AlertContact, MonitorContact]]:
        async def _list(session: AsyncSession):
            result = await session.execute(
                select(AlertContact, MonitorContact)
                .join(MonitorContact, MonitorContact.contact_id == AlertContact.id)
                .where(
                    and_(
                        MonitorContact.monitor_id == monitor_id,
                        AlertContact.is_active.is_(True),
                        AlertContact.is_enabled.is_(True),
                    )
                )
                .order_by(AlertContact.id)
            )
            return [(contact, link) for contact, link in result.all()]

        return await self._run(f"list contacts for monitor {monitor_id}", _list)

    async def get_contact_binding(self, monitor_id: int, contact_id: int) -> Optional[Tuple[AlertContact, MonitorContact]]:
        for contact, link in await self.list_active_contacts(monitor_id):
            if contact.id == contact_id:
                return contact, link
        return None

    async def insert_alert_log(self, monitor_id: int, contact_id: int, alert_type: str, status: str, message: Optional[str]):
        async def _insert(session: AsyncSession):
            session.add(AlertLog(
                monitor_id=monitor_id,
                contact_id=contact_id,
                type=alert_type,
                status=status,
                message=message,
            ))
            await session.commit()

        await self._run(f"insert alert log for monitor {monitor_id}", _insert)

    async def purge_alert_logs(self, before: datetime) -> int:
        async def _purge(session: AsyncSession):
            result = await session.execute(delete(AlertLog).where(AlertLog.created_at < before))
            await session.commit()
            return result.rowcount or 0

        return await self._run("purge alert logs", _purge)

    async def list_recent_checks(self, since: datetime) -> List[Tuple[Monitor, MonitorCheck, Optional[MonitorCheck]]]:
        """Active monitors whose latest check is at or after ``since``.

        Each row is ``(monitor, latest_check, previous_check_or_None)``.
        """
        async def _list(session: AsyncSession):
            monitors = await session.execute(
                select(Monitor).where(Monitor.is_active.is_(True)).order_by(Monitor.id)
            )
            rows = []
            for monitor in monitors.scalars().all():
                result = await session.execute(
                    select(MonitorCheck)
                    .where(MonitorCheck.monitor_id == monitor.id)
                    .order_by(MonitorCheck.checked_at.desc(), MonitorCheck.id.desc())
                    .limit(2)
                )
                checks = list(result.scalars().all())
                if not checks or checks[0].checked_at < since:
                    continue
                rows.append((monitor, checks[0], checks[1] if len(checks) > 1 else None))
            return rows

        return await self._run("list recent checks", _list)
