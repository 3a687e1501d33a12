import asyncio
import base64
import time
from datetime import timedelta

import httpx
import pytest
from pydantic import ValidationError

from uptimeguard.errors import ConfigValidationError, PersistenceError, TransportError
from uptimeguard.schemas.monitor import MonitorConfig
from uptimeguard.services.checker import ProbeExecutor
from uptimeguard.services.probes import HeartbeatProbe, TlsProbe, parse_status_codes
from uptimeguard.services.transport import Transport
from uptimeguard.utils.timeutils import utcnow


def make_config(**fields) -> MonitorConfig:
    values = {"id": 1, "name": "Example", "kind": "http", "url": "https://example.com", "timeout_seconds": 5}
    values.update(fields)
    return MonitorConfig(**values)


@pytest.fixture
def executor(kv_store, transport):
    return ProbeExecutor(kv_store, transport=transport, region="eu-west")


# Status code expressions

def test_parse_status_codes_ranges_and_singles():
    assert parse_status_codes("200-299,304") == frozenset(range(200, 300)) | {304}


@pytest.mark.parametrize("expression", [None, "", "   "])
def test_parse_status_codes_defaults_to_200(expression):
    assert parse_status_codes(expression) == frozenset({200})


@pytest.mark.parametrize("expression", ["abc", "300-200", "99", "200-700", "200,,x"])
def test_parse_status_codes_rejects_malformed(expression):
    with pytest.raises(ConfigValidationError):
        parse_status_codes(expression)


# HTTP

async def test_http_up_on_expected_status(executor, web):
    result = await executor.execute(make_config())

    assert result.status == "up"
    assert result.status_code == 200
    assert result.region == "eu-west"
    assert result.response_time_ms is not None
    assert result.error_message is None


async def test_http_404_is_down_and_mentions_code(executor, web):
    web.respond(404, "missing")

    result = await executor.execute(make_config(expected_status_codes="200-299"))

    assert result.status == "down"
    assert result.status_code == 404
    assert "404" in result.error_message


async def test_http_timeout(executor, web):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    web.handler = handler

    result = await executor.execute(make_config(timeout_seconds=5))

    assert result.status == "timeout"
    assert result.error_message == "Request timeout after 5s"


async def test_http_connection_failure_is_down(executor, web):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    web.handler = handler

    result = await executor.execute(make_config())

    assert result.status == "down"
    assert "connection refused" in result.error_message


async def test_http_hanging_server_returns_within_timeout(executor, web):
    async def handler(request):
        await asyncio.sleep(10)
        return httpx.Response(200)

    web.handler = handler

    start = time.monotonic()
    result = await executor.execute(make_config(timeout_seconds=0.2))

    assert result.status == "timeout"
    assert time.monotonic() - start < 1.5


async def test_http_basic_auth_and_body(executor, web):
    config = make_config(
        method="post",
        body='{"ping": true}',
        auth_type="basic",
        auth_username="user",
        auth_password="secret",
        headers='{"X-Probe": "1"}',
    )

    await executor.execute(config)

    request = web.requests[-1]
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"user:secret").decode()
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Probe"] == "1"
    assert request.content == b'{"ping": true}'


async def test_http_bearer_auth(executor, web):
    await executor.execute(make_config(auth_type="bearer", auth_token="tok"))

    assert web.requests[-1].headers["Authorization"] == "Bearer tok"


async def test_http_without_scheme_uses_kind(executor, web):
    await executor.execute(make_config(kind="https", url="example.com/status"))

    assert str(web.requests[-1].url) == "https://example.com/status"


async def test_malformed_status_codes_rejected(executor):
    with pytest.raises(ConfigValidationError):
        await executor.execute(make_config(expected_status_codes="two hundred"))


# Keyword

async def test_keyword_missing_from_body_is_down(executor, web):
    web.respond(200, "<html>all systems nominal</html>")

    result = await executor.execute(make_config(kind="keyword", keyword="healthy", keyword_type="exists"))

    assert result.status == "down"
    assert result.keyword_found is False
    assert result.error_message == 'Keyword "healthy" not found'


async def test_keyword_present_is_up(executor, web):
    web.respond(200, "status: healthy")

    result = await executor.execute(make_config(kind="keyword", keyword="healthy"))

    assert result.status == "up"
    assert result.keyword_found is True


async def test_keyword_not_exists_mode(executor, web):
    web.respond(200, "fatal error")

    result = await executor.execute(make_config(kind="keyword", keyword="error", keyword_type="not_exists"))

    assert result.status == "down"
    assert result.keyword_found is True
    assert result.error_message == 'Keyword "error" found'


async def test_keyword_skipped_when_http_fails(executor, web):
    web.respond(500, "healthy")

    result = await executor.execute(make_config(kind="keyword", keyword="healthy"))

    assert result.status == "down"
    assert result.keyword_found is None
    assert result.status_code == 500


# Ping

async def test_ping_sends_head_to_default_port(executor, web):
    web.respond(405)

    result = await executor.execute(make_config(kind="ping", url=None, hostname="db.internal"))

    assert result.status == "up"
    request = web.requests[-1]
    assert request.method == "HEAD"
    assert request.url.scheme == "http"
    assert request.url.host == "db.internal"
    assert request.url.port in (None, 80)


async def test_ping_unreachable_is_down(executor, web):
    def handler(request):
        raise httpx.ConnectError("no route to host", request=request)

    web.handler = handler

    result = await executor.execute(make_config(kind="ping", url=None, hostname="db.internal", port=8080))

    assert result.status == "down"
    assert "no route to host" in result.error_message


# Port

async def test_port_open(executor):
    server = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        result = await executor.execute(make_config(kind="port", url=None, hostname="127.0.0.1", port=port))
    finally:
        server.close()
        await server.wait_closed()

    assert result.status == "up"
    assert result.response_time_ms is not None


async def test_port_closed(executor):
    server = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    result = await executor.execute(make_config(kind="port", url=None, hostname="127.0.0.1", port=port))

    assert result.status == "down"
    assert result.error_message.startswith(f"Port {port} closed or unreachable")


async def test_port_requires_port(executor):
    with pytest.raises(ConfigValidationError):
        await executor.execute(make_config(kind="port", url=None, hostname="127.0.0.1"))


@pytest.mark.parametrize("port", [0, 70000])
def test_port_outside_valid_range_rejected(port):
    with pytest.raises(ValidationError):
        make_config(kind="port", url=None, hostname="127.0.0.1", port=port)


async def test_connect_to_out_of_range_port_is_transport_error(transport):
    with pytest.raises(TransportError):
        await transport.connect("127.0.0.1", 70000, timeout=1)


# TLS

async def test_tls_reports_placeholder_days(executor, web):
    result = await executor.execute(make_config(kind="tls", url=None, hostname="example.com"))

    assert result.status == "up"
    assert result.tls_days_remaining == 30
    assert web.requests[-1].url.scheme == "https"
    assert web.requests[-1].url.host == "example.com"


async def test_ssl_alias_maps_to_tls(executor, web):
    result = await executor.execute(make_config(kind="ssl"))

    assert result.status == "up"
    assert web.requests[-1].method == "HEAD"


async def test_tls_failure(executor, web):
    def handler(request):
        raise httpx.ConnectError("certificate verify failed", request=request)

    web.handler = handler

    result = await executor.execute(make_config(kind="tls"))

    assert result.status == "down"
    assert result.tls_days_remaining == 0
    assert result.error_message.startswith("TLS check failed")


async def test_tls_uses_certificate_inspector(transport):
    seen = []

    async def inspector(hostname, port):
        seen.append((hostname, port))
        return 42

    probe = TlsProbe("eu-west", inspector=inspector)

    result = await probe.execute(make_config(kind="tls", url="https://example.com:8443"), transport)

    assert result.tls_days_remaining == 42
    assert seen == [("example.com", 8443)]


# Heartbeat

async def test_heartbeat_never_received(executor):
    result = await executor.execute(make_config(kind="heartbeat", url=None, interval_seconds=60))

    assert result.status == "down"
    assert result.error_message == "No heartbeat received"


async def test_heartbeat_recent_is_up(executor):
    await executor.heartbeat.record(1, 60, at=utcnow() - timedelta(seconds=30))

    result = await executor.execute(make_config(kind="heartbeat", url=None, interval_seconds=60))

    assert result.status == "up"


async def test_heartbeat_overdue(executor, kv_store):
    await executor.heartbeat.record(1, 60, at=utcnow() - timedelta(seconds=300))

    result = await executor.execute(make_config(kind="heartbeat", url=None, interval_seconds=60))

    assert result.status == "down"
    assert result.error_message.startswith("Heartbeat overdue by ")
    assert await kv_store.get(HeartbeatProbe.key_for(1)) is not None


# Dispatch

async def test_unsupported_kind_rejected(executor):
    with pytest.raises(ConfigValidationError, match="Unsupported monitor type: dns"):
        await executor.execute(make_config(kind="dns"))


async def test_heartbeat_store_failure_is_error_result(executor, kv_store, monkeypatch):
    async def broken_get(key):
        raise PersistenceError("kv get heartbeat:1 failed: disk I/O error")

    monkeypatch.setattr(kv_store, "get", broken_get)

    result = await executor.execute(make_config(kind="heartbeat", url=None, interval_seconds=60))

    assert result.status == "error"
    assert "disk I/O error" in result.error_message


async def test_heartbeat_unreadable_timestamp_is_error_result(executor, kv_store):
    await kv_store.put(HeartbeatProbe.key_for(1), "yesterday-ish", ttl_seconds=60)

    result = await executor.execute(make_config(kind="heartbeat", url=None, interval_seconds=60))

    assert result.status == "error"


# Transport clients

async def test_transport_keeps_one_client_per_verify_mode():
    transport = Transport()
    try:
        verified = transport.client_for(True)
        unverified = transport.client_for(False)

        assert verified is not unverified
        assert transport.client_for(True) is verified
        assert transport.client_for(False) is unverified
    finally:
        await transport.aclose()


async def test_injected_client_serves_every_verify_mode():
    client = httpx.AsyncClient()
    transport = Transport(client=client)
    try:
        assert transport.client_for(True) is client
        assert transport.client_for(False) is client
    finally:
        await transport.aclose()
