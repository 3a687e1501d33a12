import json
from datetime import datetime, timedelta
from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import select

from uptimeguard.errors import PersistenceError
from uptimeguard.models import AlertLog
from uptimeguard.schemas.monitor import MonitorSnapshot
from uptimeguard.services import alerter as alerter_module
from uptimeguard.services.alerter import (
    NotificationDispatcher,
    NotificationEvent,
    build_notification,
    notified_key,
    pending_key,
    should_notify,
)
from uptimeguard.services.results import CheckResult
from uptimeguard.utils.timeutils import utcnow

HOOK = "https://hooks.example.com/alerts"


@pytest.fixture
def dispatcher(datastore, kv_store, transport):
    return NotificationDispatcher(datastore, kv_store, transport=transport)


def snapshot(monitor):
    return MonitorSnapshot.model_validate(monitor)


def down_result(at=None):
    return CheckResult(
        status="down",
        checked_at=at or utcnow(),
        region="default",
        status_code=503,
        error_message="Unexpected status code: 503",
    )


def up_result(at=None):
    return CheckResult(status="up", checked_at=at or utcnow(), region="default", response_time_ms=87)


async def alert_logs(session_factory, monitor_id):
    async with session_factory() as session:
        result = await session.execute(
            select(AlertLog).where(AlertLog.monitor_id == monitor_id).order_by(AlertLog.id)
        )
        return list(result.scalars().all())


# Eligibility and template

@pytest.mark.parametrize(
    ("down", "up", "current", "previous", "expected"),
    [
        (True, True, "down", "up", True),
        (False, True, "down", "up", False),
        (False, True, "up", "down", True),
        (True, False, "up", "down", False),
        (True, True, "up", "up", False),
        (True, True, "timeout", "unknown", True),
        (False, False, "down", "up", False),
    ],
)
def test_should_notify(down, up, current, previous, expected):
    link = SimpleNamespace(notify_on_down=down, notify_on_up=up)
    assert should_notify(link, current, previous) is expected


def test_build_notification_for_down():
    event = NotificationEvent(
        monitor_id=7,
        monitor_name="API",
        monitor_url="https://api.example.com",
        contact_id=1,
        status="timeout",
        previous_status="up",
        delay_minutes=0,
        timestamp=datetime(2026, 1, 2, 3, 4, 5),
        error_message="Request timeout after 30s",
    )

    notification = build_notification(event)

    assert notification["type"] == "down"
    assert notification["title"] == "🚨 API is DOWN"
    assert "Error: Request timeout after 30s" in notification["message"]
    assert notification["timestamp"] == "2026-01-02T03:04:05Z"
    assert notification["monitor"]["status"] == "timeout"


def test_build_notification_for_recovery():
    event = NotificationEvent(
        monitor_id=7,
        monitor_name="API",
        monitor_url="https://api.example.com",
        contact_id=1,
        status="up",
        previous_status="down",
        delay_minutes=0,
        timestamp=datetime(2026, 1, 2, 3, 4, 5),
        response_time_ms=87,
    )

    notification = build_notification(event)

    assert notification["type"] == "up"
    assert notification["title"] == "✅ API is back UP"
    assert "Response time: 87ms" in notification["message"]


# Delivery

async def test_down_only_disabled_contact_gets_recovery_only(dispatcher, make_monitor, make_contact, web, session_factory):
    monitor = await make_monitor(name="API")
    await make_contact(monitor.id, notify_on_down=False, notify_on_up=True)

    down = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())
    assert down.sent == 0
    assert down.skipped == 1
    assert web.requests_to(HOOK) == []

    up = await dispatcher.dispatch(snapshot(monitor), "up", "down", up_result())
    assert up.sent == 1
    bodies = web.json_bodies(HOOK)
    assert len(bodies) == 1
    assert bodies[0]["title"] == "✅ API is back UP"

    logs = await alert_logs(session_factory, monitor.id)
    assert [(log.type, log.status, log.message) for log in logs] == [("up", "sent", "✅ API is back UP")]


async def test_webhook_settings(dispatcher, make_monitor, make_contact, web):
    monitor = await make_monitor()
    await make_contact(monitor.id, settings={"method": "put", "auth_token": "s3cret", "headers": {"X-Team": "ops"}})

    await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    request = web.requests_to(HOOK)[0]
    assert request.method == "PUT"
    assert request.headers["Authorization"] == "Bearer s3cret"
    assert request.headers["X-Team"] == "ops"
    assert json.loads(request.content)["monitor"]["error"] == "Unexpected status code: 503"


async def test_discord_embed(dispatcher, make_monitor, make_contact, web):
    monitor = await make_monitor(name="Shop")
    await make_contact(monitor.id, type="discord", destination="https://discord.example.com/webhook")

    await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())
    await dispatcher.dispatch(snapshot(monitor), "up", "down", up_result())

    down_payload, up_payload = web.json_bodies("https://discord.example.com")
    assert down_payload["embeds"][0]["color"] == 0xff0000
    assert up_payload["embeds"][0]["color"] == 0x00ff00
    assert down_payload["username"] == "UptimeMonitor"
    fields = {field["name"]: field["value"] for field in up_payload["embeds"][0]["fields"]}
    assert fields["Status"] == "UP"
    assert fields["Response Time"] == "87ms"


async def test_slack_attachment(dispatcher, make_monitor, make_contact, web):
    monitor = await make_monitor()
    await make_contact(monitor.id, type="slack", destination="https://slack.example.com/hook", settings={"icon": ":fire:"})

    await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    payload = web.json_bodies("https://slack.example.com")[0]
    assert payload["attachments"][0]["color"] == "danger"
    assert payload["icon_emoji"] == ":fire:"


async def test_telegram_send_message(dispatcher, make_monitor, make_contact, web):
    monitor = await make_monitor(name="<Billing>")
    await make_contact(
        monitor.id,
        type="telegram",
        destination="telegram",
        settings={"bot_token": "123:abc", "chat_id": "-100"},
    )

    report = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    assert report.sent == 1
    payload = web.json_bodies("https://api.telegram.org/bot123:abc/sendMessage")[0]
    assert payload["chat_id"] == "-100"
    assert payload["parse_mode"] == "HTML"
    assert payload["text"].startswith("🚨 &lt;Billing&gt; is DOWN")


async def test_telegram_without_credentials_fails(dispatcher, make_monitor, make_contact, session_factory):
    monitor = await make_monitor()
    await make_contact(monitor.id, type="telegram", destination="telegram", settings={"chat_id": "1"})

    report = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    assert report.failed == 1
    logs = await alert_logs(session_factory, monitor.id)
    assert logs[0].status == "failed"
    assert logs[0].message == "Missing Telegram bot token or chat ID"


async def test_email_stub_without_smtp(dispatcher, make_monitor, make_contact, web):
    monitor = await make_monitor()
    await make_contact(monitor.id, type="email", destination="ops@example.com")

    report = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    assert report.sent == 1
    assert web.requests == []


async def test_email_uses_smtp_when_configured(dispatcher, make_monitor, make_contact, monkeypatch):
    monitor = await make_monitor(name="API")
    await make_contact(monitor.id, type="email", destination="ops@example.com, oncall@example.com")
    sent = []

    async def fake_send(config, to_address, subject, body):
        sent.append((config.host, to_address, subject))

    monkeypatch.setattr(alerter_module.settings, "smtp_host", "smtp.example.com")
    monkeypatch.setattr(alerter_module.email_sender_service, "send_email", fake_send)

    await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    assert sent == [("smtp.example.com", "ops@example.com, oncall@example.com", "🚨 API is DOWN")]


async def test_failure_does_not_stop_other_contacts(dispatcher, make_monitor, make_contact, web, session_factory):
    monitor = await make_monitor()
    broken = await make_contact(monitor.id, destination="https://broken.example.com/hook")
    await make_contact(monitor.id, type="carrier-pigeon", destination="loft")
    healthy = await make_contact(monitor.id)

    def handler(request):
        if request.url.host == "broken.example.com":
            return httpx.Response(500)
        return httpx.Response(204)

    web.handler = handler

    report = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    assert report.sent == 1
    assert report.failed == 2
    logs = {log.contact_id: log for log in await alert_logs(session_factory, monitor.id)}
    assert logs[broken.id].status == "failed"
    assert logs[broken.id].message == "Webhook returned 500"
    assert logs[healthy.id].status == "sent"
    assert [log.message for log in logs.values() if log.status == "failed"].count("Unknown contact type: carrier-pigeon") == 1


async def test_transport_error_logged_as_failed(dispatcher, make_monitor, make_contact, web, session_factory):
    monitor = await make_monitor()
    await make_contact(monitor.id)

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    web.handler = handler

    report = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    assert report.failed == 1
    log = (await alert_logs(session_factory, monitor.id))[0]
    assert log.status == "failed"
    assert "connection refused" in log.message


async def test_inactive_and_disabled_contacts_ignored(dispatcher, make_monitor, make_contact, web):
    monitor = await make_monitor()
    await make_contact(monitor.id, is_active=False)
    await make_contact(monitor.id, is_enabled=False)

    report = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    assert (report.sent, report.failed, report.skipped) == (0, 0, 0)
    assert web.requests == []


async def test_dispatch_marks_check_notified(dispatcher, make_monitor, make_contact, kv_store):
    monitor = await make_monitor()
    await make_contact(monitor.id)

    await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result(), check_id=41)

    assert await kv_store.get(notified_key(monitor.id, 41)) == "1"


async def test_unavailable_pending_state_does_not_stop_other_contacts(dispatcher, make_monitor, make_contact, web, kv_store, monkeypatch):
    monitor = await make_monitor()
    await make_contact(monitor.id, delay_minutes=5)
    await make_contact(monitor.id)
    real_get = kv_store.get

    async def flaky_get(key):
        if key.startswith("pending_notification:"):
            raise PersistenceError(f"kv get {key} failed: disk I/O error")
        return await real_get(key)

    monkeypatch.setattr(kv_store, "get", flaky_get)

    report = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result())

    assert report.sent == 1
    assert report.failed == 1
    assert len(report.errors) == 1
    assert len(web.requests_to(HOOK)) == 1


# Delayed notifications

async def test_delayed_down_notice_delivered_when_still_down(dispatcher, datastore, make_monitor, make_contact, web, kv_store):
    monitor = await make_monitor()
    await make_contact(monitor.id, delay_minutes=5)
    down_at = utcnow()
    await datastore.insert_check(monitor.id, down_result(down_at))

    report = await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result(down_at))
    assert report.deferred == 1
    assert web.requests == []

    early = await dispatcher.process_pending(now=down_at + timedelta(minutes=2))
    assert early.sent == 0
    assert await kv_store.scan("pending_notification:") != []

    due = await dispatcher.process_pending(now=down_at + timedelta(minutes=6))
    assert due.sent == 1
    assert len(web.requests_to(HOOK)) == 1
    assert await kv_store.scan("pending_notification:") == []


async def test_delayed_notice_dropped_after_recovery(dispatcher, datastore, make_monitor, make_contact, web, kv_store):
    monitor = await make_monitor()
    contact = await make_contact(monitor.id, delay_minutes=5)
    down_at = utcnow()

    await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result(down_at))
    report = await dispatcher.dispatch(snapshot(monitor), "up", "down", up_result(down_at + timedelta(minutes=1)))

    assert report.sent == 0
    assert report.skipped == 1
    assert await kv_store.get(pending_key(monitor.id, contact.id)) is None
    assert web.requests == []


async def test_pending_dropped_when_monitor_recovered(dispatcher, datastore, make_monitor, make_contact, web):
    monitor = await make_monitor()
    await make_contact(monitor.id, delay_minutes=1)
    down_at = utcnow()

    await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result(down_at))
    await datastore.insert_check(monitor.id, up_result(down_at + timedelta(seconds=30)))

    report = await dispatcher.process_pending(now=down_at + timedelta(minutes=2))

    assert report.skipped == 1
    assert web.requests == []


async def test_unreadable_pending_entry_dropped_without_stopping_sweep(dispatcher, datastore, make_monitor, make_contact, web, kv_store):
    monitor = await make_monitor()
    await make_contact(monitor.id, delay_minutes=1)
    down_at = utcnow()
    await datastore.insert_check(monitor.id, down_result(down_at))
    await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result(down_at))
    await kv_store.put("pending_notification:0:0", "{not json", 600)

    report = await dispatcher.process_pending(now=down_at + timedelta(minutes=2))

    assert report.sent == 1
    assert len(report.errors) == 1
    assert await kv_store.get("pending_notification:0:0") is None
    assert len(web.requests_to(HOOK)) == 1


async def test_pending_entry_store_failure_does_not_stop_sweep(dispatcher, datastore, make_monitor, make_contact, web, monkeypatch):
    broken = await make_monitor(name="broken")
    await make_contact(broken.id, delay_minutes=1)
    healthy = await make_monitor(name="healthy")
    await make_contact(healthy.id, delay_minutes=1)
    down_at = utcnow()
    for monitor in (broken, healthy):
        await datastore.insert_check(monitor.id, down_result(down_at))
        await dispatcher.dispatch(snapshot(monitor), "down", "up", down_result(down_at))
    real_latest = datastore.latest_check

    async def flaky_latest(monitor_id):
        if monitor_id == broken.id:
            raise PersistenceError("latest check failed: disk I/O error")
        return await real_latest(monitor_id)

    monkeypatch.setattr(datastore, "latest_check", flaky_latest)

    report = await dispatcher.process_pending(now=down_at + timedelta(minutes=2))

    assert report.sent == 1
    assert len(report.errors) == 1
    assert web.json_bodies(HOOK)[0]["title"] == "🚨 healthy is DOWN"


# Backstop

async def test_backstop_dispatches_missed_transition_once(dispatcher, datastore, make_monitor, make_contact, web):
    monitor = await make_monitor()
    await make_contact(monitor.id)
    now = utcnow()
    await datastore.insert_check(monitor.id, up_result(now - timedelta(minutes=3)))
    await datastore.insert_check(monitor.id, down_result(now - timedelta(minutes=1)))

    first = await dispatcher.process_missed_transitions(now=now)
    second = await dispatcher.process_missed_transitions(now=now)

    assert first.sent == 1
    assert second.sent == 0
    assert len(web.requests_to(HOOK)) == 1


async def test_backstop_ignores_old_and_steady_monitors(dispatcher, datastore, make_monitor, make_contact, web):
    now = utcnow()
    old = await make_monitor(name="old")
    await make_contact(old.id)
    await datastore.insert_check(old.id, up_result(now - timedelta(minutes=40)))
    await datastore.insert_check(old.id, down_result(now - timedelta(minutes=30)))

    steady = await make_monitor(name="steady")
    await make_contact(steady.id)
    await datastore.insert_check(steady.id, up_result(now - timedelta(minutes=3)))
    await datastore.insert_check(steady.id, up_result(now - timedelta(minutes=1)))

    report = await dispatcher.process_missed_transitions(window_minutes=10, now=now)

    assert report.sent == 0
    assert web.requests == []


async def test_backstop_purges_old_alert_logs(dispatcher, datastore, make_monitor, make_contact, session_factory):
    monitor = await make_monitor()
    contact = await make_contact(monitor.id)
    async with session_factory() as session:
        session.add(AlertLog(
            monitor_id=monitor.id,
            contact_id=contact.id,
            type="down",
            status="sent",
            created_at=utcnow() - timedelta(days=31),
        ))
        session.add(AlertLog(monitor_id=monitor.id, contact_id=contact.id, type="up", status="sent"))
        await session.commit()

    await dispatcher.process_missed_transitions()

    logs = await alert_logs(session_factory, monitor.id)
    assert [log.type for log in logs] == ["up"]
