"""Alerter service - fans a status transition out to a monitor's alert contacts.

Every contact is delivered to and logged independently. Down notices for
contacts with a delay are parked in the ephemeral store and delivered by
``process_pending`` once due, provided the monitor is still down.
"""
import html
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from ..config import settings
from ..errors import DeliveryError, PersistenceError, UptimeGuardError
from ..models import AlertContact, MonitorCheck, MonitorContact
from ..schemas.monitor import MonitorSnapshot
from ..utils.timeutils import utcnow
from .datastore import Datastore
from .email_sender import EmailConfig, email_sender_service
from .incidents import is_transition
from .kv_store import EphemeralStore
from .results import STATUS_UNKNOWN, STATUS_UP, CheckResult
from .transport import USER_AGENT, Transport

logger = logging.getLogger(__name__)

PENDING_PREFIX = "pending_notification:"
NOTIFIED_PREFIX = "notified:"
NOTIFIED_TTL_SECONDS = 86400

ALERT_DOWN = "down"
ALERT_UP = "up"

COLOR_DOWN = 0xff0000
COLOR_UP = 0x00ff00


def pending_key(monitor_id: int, contact_id: int) -> str:
    return f"{PENDING_PREFIX}{monitor_id}:{contact_id}"


def notified_key(monitor_id: int, check_id: int) -> str:
    return f"{NOTIFIED_PREFIX}{monitor_id}:{check_id}"


@dataclass(frozen=True)
class NotificationEvent:
    """One notice for one contact."""
    monitor_id: int
    monitor_name: str
    monitor_url: str
    contact_id: int
    status: str
    previous_status: str
    delay_minutes: int
    timestamp: datetime
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    check_id: Optional[int] = None

    @property
    def alert_type(self) -> str:
        return ALERT_UP if self.status == STATUS_UP else ALERT_DOWN

    def to_json(self) -> str:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "NotificationEvent":
        data = json.loads(raw)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


@dataclass
class DispatchReport:
    """Per-contact outcome counts of one dispatch run."""
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    errors: List[UptimeGuardError] = field(default_factory=list)

    def merge(self, other: "DispatchReport"):
        self.sent += other.sent
        self.failed += other.failed
        self.skipped += other.skipped
        self.deferred += other.deferred
        self.errors.extend(other.errors)


def should_notify(link: MonitorContact, current_status: str, previous_status: Optional[str]) -> bool:
    """Whether a contact binding wants a notice for this change."""
    if current_status != STATUS_UP:
        return bool(link.notify_on_down)
    return bool(link.notify_on_up) and previous_status != STATUS_UP


def format_message(event: NotificationEvent) -> str:
    when = event.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")
    if event.alert_type == ALERT_DOWN:
        return (
            f'Monitor "{event.monitor_name}" ({event.monitor_url}) is currently DOWN.\n\n'
            f"Error: {event.error_message or 'Unknown error'}\n"
            f"Time: {when}\n"
            f"Duration: Just detected"
        )
    return (
        f'Monitor "{event.monitor_name}" ({event.monitor_url}) has RECOVERED and is now UP.\n\n'
        f"Response time: {event.response_time_ms}ms\n"
        f"Time: {when}"
    )


def build_notification(event: NotificationEvent) -> dict:
    """Channel-neutral notice every channel renders from."""
    is_down = event.alert_type == ALERT_DOWN
    return {
        "type": event.alert_type,
        "title": f"🚨 {event.monitor_name} is DOWN" if is_down else f"✅ {event.monitor_name} is back UP",
        "message": format_message(event),
        "timestamp": event.timestamp.isoformat() + "Z",
        "monitor": {
            "id": event.monitor_id,
            "name": event.monitor_name,
            "url": event.monitor_url,
            "status": event.status,
            "response_time": event.response_time_ms,
            "error": event.error_message,
        },
    }


def _contact_settings(contact: AlertContact) -> dict:
    if not contact.settings:
        return {}
    try:
        return json.loads(contact.settings)
    except json.JSONDecodeError as e:
        raise DeliveryError(f"Invalid settings for contact {contact.id}: {e}") from e


def _summary_fields(notification: dict) -> List[tuple]:
    monitor = notification["monitor"]
    fields = [
        ("Monitor", monitor["name"]),
        ("URL", monitor["url"]),
        ("Status", monitor["status"].upper()),
    ]
    if monitor["response_time"]:
        fields.append(("Response Time", f"{monitor['response_time']}ms"))
    return fields


class NotificationDispatcher:
    """Resolves contacts, renders payloads, sends and logs per contact."""

    def __init__(self, datastore: Datastore, kv_store: EphemeralStore, transport: Optional[Transport] = None):
        self.datastore = datastore
        self.kv_store = kv_store
        self.transport = transport or Transport()
        self.channels = {
            "email": self._send_email,
            "webhook": self._send_webhook,
            "discord": self._send_discord,
            "slack": self._send_slack,
            "telegram": self._send_telegram,
        }

    async def dispatch(
        self,
        monitor: MonitorSnapshot,
        current_status: str,
        previous_status: Optional[str],
        result: Optional[CheckResult] = None,
        check_id: Optional[int] = None,
    ) -> DispatchReport:
        """Notify every eligible contact of ``monitor`` about a transition.

        Raises ``PersistenceError`` only when the contact list cannot be
        loaded; per-contact failures are logged and counted on the report.
        """
        report = DispatchReport()
        bindings = await self.datastore.list_active_contacts(monitor.id)
        if not bindings:
            logger.debug(f"No active alert contacts for monitor {monitor.id}")

        for contact, link in bindings:
            if not should_notify(link, current_status, previous_status):
                report.skipped += 1
                continue

            event = NotificationEvent(
                monitor_id=monitor.id,
                monitor_name=monitor.name,
                monitor_url=monitor.target,
                contact_id=contact.id,
                status=current_status,
                previous_status=previous_status or STATUS_UNKNOWN,
                delay_minutes=link.delay_minutes or 0,
                timestamp=result.checked_at if result else utcnow(),
                response_time_ms=result.response_time_ms if result else None,
                error_message=result.error_message if result else None,
                check_id=check_id,
            )

            try:
                await self._notify_contact(contact, event, report)
            except PersistenceError as e:
                logger.error(f"Notification state unavailable for contact {contact.id} of monitor {monitor.id}: {e}")
                report.failed += 1
                report.errors.append(e)

        if check_id is not None:
            await self._mark_notified(monitor.id, check_id, report)
        return report

    async def _notify_contact(self, contact: AlertContact, event: NotificationEvent, report: DispatchReport):
        if event.alert_type == ALERT_DOWN and event.delay_minutes > 0:
            await self._defer(event, report)
            return

        if event.alert_type == ALERT_UP and await self._drop_pending(event):
            # The down notice never went out, so neither does the recovery
            report.skipped += 1
            return

        await self._deliver(contact, event, report)

    async def _defer(self, event: NotificationEvent, report: DispatchReport):
        key = pending_key(event.monitor_id, event.contact_id)
        if await self.kv_store.get(key) is not None:
            # Keep the first pending notice of this outage
            report.skipped += 1
            return
        ttl = event.delay_minutes * 60 + NOTIFIED_TTL_SECONDS
        try:
            await self.kv_store.put(key, event.to_json(), ttl)
        except PersistenceError as e:
            logger.error(f"Could not queue delayed notification {key}: {e}")
            report.errors.append(e)
            return
        logger.info(
            f"Delaying down notification for monitor {event.monitor_id} "
            f"to contact {event.contact_id} by {event.delay_minutes} minutes"
        )
        report.deferred += 1

    async def _drop_pending(self, event: NotificationEvent) -> bool:
        key = pending_key(event.monitor_id, event.contact_id)
        if await self.kv_store.get(key) is None:
            return False
        await self.kv_store.delete(key)
        logger.info(f"Monitor {event.monitor_id} recovered before delayed notice to contact {event.contact_id}")
        return True

    async def _mark_notified(self, monitor_id: int, check_id: int, report: DispatchReport):
        try:
            await self.kv_store.put(notified_key(monitor_id, check_id), "1", NOTIFIED_TTL_SECONDS)
        except PersistenceError as e:
            logger.warning(f"Could not store notification marker for monitor {monitor_id}: {e}")
            report.errors.append(e)

    async def _deliver(self, contact: AlertContact, event: NotificationEvent, report: DispatchReport):
        notification = build_notification(event)
        try:
            await self.send(contact, notification)
        except Exception as e:
            error = e if isinstance(e, DeliveryError) else DeliveryError(f"{type(e).__name__}: {e}")
            logger.error(f"Failed to send notification to contact {contact.id}: {error}")
            report.failed += 1
            report.errors.append(error)
            await self._log(event, "failed", str(error), report)
            return

        logger.info(f"Sent {event.alert_type} notification for monitor {event.monitor_id} to contact {contact.id}")
        report.sent += 1
        await self._log(event, "sent", notification["title"], report)

    async def _log(self, event: NotificationEvent, status: str, message: str, report: DispatchReport):
        try:
            await self.datastore.insert_alert_log(
                event.monitor_id, event.contact_id, event.alert_type, status, message
            )
        except PersistenceError as e:
            logger.error(f"Failed to log notification for contact {event.contact_id}: {e}")
            report.errors.append(e)

    async def send(self, contact: AlertContact, notification: dict):
        """Deliver through the contact's channel. Raises ``DeliveryError``."""
        sender = self.channels.get(contact.type)
        if sender is None:
            raise DeliveryError(f"Unknown contact type: {contact.type}")
        try:
            await sender(contact, _contact_settings(contact), notification)
        except DeliveryError:
            raise
        except UptimeGuardError as e:
            raise DeliveryError(f"{contact.type} delivery failed: {e}") from e

    # Channels

    async def _send_email(self, contact: AlertContact, options: dict, notification: dict):
        config = EmailConfig.from_settings()
        if config is None:
            logger.info(f"Sending email to {contact.destination}: {notification['title']}")
            return
        await email_sender_service.send_email(
            config, contact.destination, notification["title"], notification["message"]
        )

    async def _send_webhook(self, contact: AlertContact, options: dict, notification: dict):
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        headers.update(options.get("headers") or {})
        if options.get("auth_token"):
            headers["Authorization"] = f"Bearer {options['auth_token']}"

        response = await self.transport.fetch(
            contact.destination,
            method=(options.get("method") or "POST").upper(),
            headers=headers,
            body=json.dumps(notification),
            timeout=10,
        )
        self._check_response("Webhook", response.status)

    async def _send_discord(self, contact: AlertContact, options: dict, notification: dict):
        embed = {
            "title": notification["title"],
            "description": notification["message"],
            "color": COLOR_DOWN if notification["type"] == ALERT_DOWN else COLOR_UP,
            "timestamp": notification["timestamp"],
            "fields": [
                {"name": name, "value": value, "inline": True}
                for name, value in _summary_fields(notification)
            ],
        }
        payload = {
            "embeds": [embed],
            "username": options.get("username") or settings.notifier_username,
        }
        response = await self.transport.post_json(contact.destination, payload)
        self._check_response("Discord", response.status)

    async def _send_slack(self, contact: AlertContact, options: dict, notification: dict):
        attachment = {
            "color": "danger" if notification["type"] == ALERT_DOWN else "good",
            "title": notification["title"],
            "text": notification["message"],
            "ts": int(utcnow().timestamp()),
            "fields": [
                {"title": name, "value": value, "short": True}
                for name, value in _summary_fields(notification)
            ],
        }
        payload = {
            "attachments": [attachment],
            "username": options.get("username") or settings.notifier_username,
            "icon_emoji": options.get("icon") or ":warning:",
        }
        response = await self.transport.post_json(contact.destination, payload)
        self._check_response("Slack", response.status)

    async def _send_telegram(self, contact: AlertContact, options: dict, notification: dict):
        bot_token = options.get("bot_token")
        chat_id = options.get("chat_id")
        if not bot_token or not chat_id:
            raise DeliveryError("Missing Telegram bot token or chat ID")

        text = f"{html.escape(notification['title'])}\n\n{html.escape(notification['message'])}"
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        response = await self.transport.post_json(
            f"https://api.telegram.org/bot{bot_token}/sendMessage", payload
        )
        self._check_response("Telegram", response.status)

    @staticmethod
    def _check_response(channel: str, status: int):
        if status >= 400:
            raise DeliveryError(f"{channel} returned {status}")

    # Delayed and missed notifications

    async def process_pending(self, now: Optional[datetime] = None) -> DispatchReport:
        """Deliver delayed down notices whose delay has elapsed."""
        now = now or utcnow()
        report = DispatchReport()

        for key, raw in await self.kv_store.scan(PENDING_PREFIX):
            try:
                await self._process_pending_entry(key, raw, now, report)
            except PersistenceError as e:
                logger.error(f"Could not process delayed notification {key}: {e}")
                report.errors.append(e)

        return report

    async def _process_pending_entry(self, key: str, raw: str, now: datetime, report: DispatchReport):
        try:
            event = NotificationEvent.from_json(raw)
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Dropping unreadable delayed notification {key}: {e}")
            report.errors.append(DeliveryError(f"Unreadable delayed notification {key}: {e}"))
            await self.kv_store.delete(key)
            return

        if event.timestamp + timedelta(minutes=event.delay_minutes) > now:
            return

        latest = await self.datastore.latest_check(event.monitor_id)
        if latest is None or latest.status == STATUS_UP:
            logger.info(f"Dropping delayed notice for monitor {event.monitor_id}: monitor is up")
            await self.kv_store.delete(key)
            report.skipped += 1
            return

        binding = await self.datastore.get_contact_binding(event.monitor_id, event.contact_id)
        await self.kv_store.delete(key)
        if binding is None:
            report.skipped += 1
            return

        contact, _ = binding
        await self._deliver(contact, event, report)

    async def process_missed_transitions(
        self,
        window_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DispatchReport:
        """Re-dispatch transitions inside the trailing window not yet notified.

        Delivery is at-least-once; a notice can repeat if the marker write
        failed after sending. Also purges expired alert logs.
        """
        window = settings.notification_window_minutes if window_minutes is None else window_minutes
        now = now or utcnow()
        report = DispatchReport()

        for monitor, latest, previous in await self.datastore.list_recent_checks(now - timedelta(minutes=window)):
            previous_status = previous.status if previous else STATUS_UNKNOWN
            if not is_transition(previous_status, latest.status):
                continue
            try:
                if await self.kv_store.get(notified_key(monitor.id, latest.id)) is not None:
                    continue

                logger.info(f"Backstop dispatch for monitor {monitor.id}: {previous_status} -> {latest.status}")
                outcome = await self.dispatch(
                    MonitorSnapshot.model_validate(monitor),
                    latest.status,
                    previous_status,
                    result=_result_from_row(latest),
                    check_id=latest.id,
                )
            except PersistenceError as e:
                logger.error(f"Backstop dispatch failed for monitor {monitor.id}: {e}")
                report.errors.append(e)
                continue
            report.merge(outcome)

        cutoff = now - timedelta(days=settings.alert_log_retention_days)
        removed = await self.datastore.purge_alert_logs(cutoff)
        if removed:
            logger.info(f"Purged {removed} alert logs older than {settings.alert_log_retention_days} days")
        await self.kv_store.purge_expired()
        return report


def _result_from_row(check: MonitorCheck) -> CheckResult:
    return CheckResult(
        status=check.status,
        checked_at=check.checked_at,
        region=check.region,
        response_time_ms=check.response_time_ms,
        status_code=check.status_code,
        error_message=check.error_message,
        tls_days_remaining=check.tls_days_remaining,
        keyword_found=check.keyword_found,
    )
