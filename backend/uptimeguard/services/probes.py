"""Probe implementations, one per monitor kind.

Every probe turns transport failures and timeouts into a ``CheckResult``.
Only configuration problems (``ConfigValidationError``) escape.
"""
import base64
import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Tuple
from urllib.parse import urlsplit

from ..errors import ConfigValidationError, PersistenceError, ProbeTimeoutError, TransportError
from ..schemas.monitor import AuthType, KeywordType, MonitorConfig
from .kv_store import EphemeralStore
from .results import (
    STATUS_DOWN,
    STATUS_ERROR,
    STATUS_TIMEOUT,
    STATUS_UP,
    CheckResult,
)
from .transport import Transport
from ..utils.timeutils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

# Methods that carry the configured request body
BODY_METHODS = {"POST", "PUT", "PATCH"}

DEFAULT_PING_PORT = 80

# Looks up days until certificate expiry for (hostname, port)
CertificateInspector = Callable[[str, int], Awaitable[Optional[int]]]


def parse_status_codes(expression: Optional[str]) -> frozenset:
    """Parse an expected status code expression such as ``"200-299,304"``.

    Empty or missing expressions mean ``{200}``. Ranges are inclusive.
    """
    if expression is None or not expression.strip():
        return frozenset({200})

    codes = set()
    for part in expression.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                start_str, end_str = part.split("-", 1)
                start, end = int(start_str.strip()), int(end_str.strip())
            else:
                start = end = int(part)
        except ValueError:
            raise ConfigValidationError(f"Invalid status code expression: {expression!r}")

        if start > end or start < 100 or end > 599:
            raise ConfigValidationError(f"Invalid status code range {part!r} in {expression!r}")
        codes.update(range(start, end + 1))

    if not codes:
        raise ConfigValidationError(f"Invalid status code expression: {expression!r}")
    return frozenset(codes)


def build_request_headers(config: MonitorConfig) -> dict:
    """Configured headers plus the authorization header for the auth mode."""
    headers = dict(config.headers)
    if config.auth_type == AuthType.BASIC and config.auth_username and config.auth_password:
        credentials = f"{config.auth_username}:{config.auth_password}".encode()
        headers["Authorization"] = f"Basic {base64.b64encode(credentials).decode()}"
    elif config.auth_type == AuthType.BEARER and config.auth_token:
        headers["Authorization"] = f"Bearer {config.auth_token}"
    return headers


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _with_scheme(target: str, scheme: str) -> str:
    if "://" in target:
        return target
    return f"{scheme}://{target}"


class Probe:
    """Base class; subclasses implement ``execute`` for one monitor kind."""

    def __init__(self, region: str):
        self.region = region

    async def execute(self, config: MonitorConfig, transport: Transport) -> CheckResult:
        raise NotImplementedError

    def _result(self, status: str, **fields) -> CheckResult:
        return CheckResult(status=status, checked_at=utcnow(), region=self.region, **fields)


class HttpProbe(Probe):
    """HTTP/HTTPS request checked against the expected status code set."""

    def target_url(self, config: MonitorConfig) -> str:
        default_scheme = "https" if config.kind == "https" else "http"
        if config.url:
            return _with_scheme(config.url, default_scheme)
        if config.hostname:
            port = f":{config.port}" if config.port else ""
            return f"{default_scheme}://{config.hostname}{port}"
        raise ConfigValidationError(f"Monitor {config.id} has no url or hostname")

    async def execute(self, config: MonitorConfig, transport: Transport) -> CheckResult:
        result, _ = await self.fetch(config, transport)
        return result

    async def fetch(self, config: MonitorConfig, transport: Transport) -> Tuple[CheckResult, str]:
        """Run the request; returns the result and the response body."""
        expected_codes = parse_status_codes(config.expected_status_codes)
        url = self.target_url(config)

        headers = build_request_headers(config)
        body = None
        if config.method in BODY_METHODS and config.body:
            body = config.body
            if not any(name.lower() == "content-type" for name in headers):
                headers["Content-Type"] = "application/json"

        start = time.monotonic()
        try:
            response = await transport.fetch(
                url,
                method=config.method,
                headers=headers,
                body=body,
                timeout=config.timeout_seconds,
                follow_redirects=config.follow_redirects,
                verify=config.verify_tls,
            )
        except ProbeTimeoutError as e:
            return self._result(STATUS_TIMEOUT, response_time_ms=_elapsed_ms(start), error_message=str(e)), ""
        except TransportError as e:
            return self._result(STATUS_DOWN, response_time_ms=_elapsed_ms(start), error_message=str(e)), ""
        except Exception as e:
            logger.error(f"Unexpected error probing monitor {config.id}: {type(e).__name__}: {e}")
            return self._result(STATUS_ERROR, error_message=str(e) or type(e).__name__), ""

        response_time = _elapsed_ms(start)
        if response.status in expected_codes:
            return self._result(STATUS_UP, response_time_ms=response_time, status_code=response.status), response.body

        return self._result(
            STATUS_DOWN,
            response_time_ms=response_time,
            status_code=response.status,
            error_message=f"Unexpected status code: {response.status}",
        ), response.body


class KeywordProbe(HttpProbe):
    """HTTP check followed by a substring test on the response body."""

    async def execute(self, config: MonitorConfig, transport: Transport) -> CheckResult:
        if not config.keyword:
            raise ConfigValidationError(f"Keyword monitor {config.id} has no keyword")

        result, body = await self.fetch(config, transport)
        if not result.is_up:
            return result

        keyword_found = config.keyword in body
        if config.keyword_type == KeywordType.NOT_EXISTS:
            ok = not keyword_found
            failure = f'Keyword "{config.keyword}" found'
        else:
            ok = keyword_found
            failure = f'Keyword "{config.keyword}" not found'

        return result.evolve(
            status=STATUS_UP if ok else STATUS_DOWN,
            keyword_found=keyword_found,
            error_message=None if ok else failure,
        )


class PingProbe(Probe):
    """Reachability check standing in for ICMP echo.

    Sends a HEAD request to ``http://hostname:port``; any completed response
    counts as reachable. This is not a true ICMP ping.
    """

    async def execute(self, config: MonitorConfig, transport: Transport) -> CheckResult:
        if not config.hostname:
            raise ConfigValidationError(f"Ping monitor {config.id} has no hostname")

        url = f"http://{config.hostname}:{config.port or DEFAULT_PING_PORT}"
        start = time.monotonic()
        try:
            response = await transport.fetch(
                url,
                method="HEAD",
                timeout=config.timeout_seconds,
                read_body=False,
            )
        except (ProbeTimeoutError, TransportError) as e:
            return self._result(STATUS_DOWN, response_time_ms=_elapsed_ms(start), error_message=str(e))

        return self._result(STATUS_UP, response_time_ms=_elapsed_ms(start), status_code=response.status)


class PortProbe(Probe):
    """Raw TCP connect to ``hostname:port``."""

    async def execute(self, config: MonitorConfig, transport: Transport) -> CheckResult:
        if not config.hostname or not config.port:
            raise ConfigValidationError(f"Port monitor {config.id} needs hostname and port")

        start = time.monotonic()
        try:
            await transport.connect(config.hostname, config.port, timeout=config.timeout_seconds)
        except (ProbeTimeoutError, TransportError) as e:
            return self._result(
                STATUS_DOWN,
                response_time_ms=_elapsed_ms(start),
                error_message=f"Port {config.port} closed or unreachable: {e}",
            )

        return self._result(STATUS_UP, response_time_ms=_elapsed_ms(start))


class TlsProbe(Probe):
    """HEAD over HTTPS; up when the handshake and request succeed.

    Certificate expiry comes from an optional inspector. Without one the
    configured placeholder is reported.
    """

    def __init__(self, region: str, placeholder_days: int = 30, inspector: Optional[CertificateInspector] = None):
        super().__init__(region)
        self.placeholder_days = placeholder_days
        self.inspector = inspector

    def target_url(self, config: MonitorConfig) -> str:
        if config.url:
            return _with_scheme(config.url, "https")
        if config.hostname:
            port = f":{config.port}" if config.port else ""
            return f"https://{config.hostname}{port}"
        raise ConfigValidationError(f"TLS monitor {config.id} has no url or hostname")

    async def execute(self, config: MonitorConfig, transport: Transport) -> CheckResult:
        url = self.target_url(config)
        start = time.monotonic()
        try:
            response = await transport.fetch(
                url,
                method="HEAD",
                timeout=config.timeout_seconds,
                verify=config.verify_tls,
                read_body=False,
            )
        except (ProbeTimeoutError, TransportError) as e:
            return self._result(
                STATUS_DOWN,
                response_time_ms=_elapsed_ms(start),
                error_message=f"TLS check failed: {e}",
                tls_days_remaining=0,
            )

        response_time = _elapsed_ms(start)
        days_remaining = await self._days_remaining(url)
        return self._result(
            STATUS_UP,
            response_time_ms=response_time,
            status_code=response.status,
            tls_days_remaining=days_remaining,
        )

    async def _days_remaining(self, url: str) -> Optional[int]:
        if self.inspector is None:
            return self.placeholder_days

        parts = urlsplit(url)
        try:
            return await self.inspector(parts.hostname or "", parts.port or 443)
        except Exception as e:
            logger.warning(f"Certificate inspection failed for {url}: {e}")
            return None


class HeartbeatProbe(Probe):
    """Passive check against the last heartbeat pushed for the monitor."""

    KEY_PREFIX = "heartbeat:"

    # Heartbeats stay readable at least this long regardless of interval
    MIN_TTL_SECONDS = 86400

    def __init__(self, region: str, kv_store: EphemeralStore):
        super().__init__(region)
        self.kv_store = kv_store

    @classmethod
    def key_for(cls, monitor_id: int) -> str:
        return f"{cls.KEY_PREFIX}{monitor_id}"

    async def record(self, monitor_id: int, interval_seconds: int, at: Optional[datetime] = None) -> datetime:
        """Store a heartbeat pushed by the monitored service."""
        received_at = to_naive_utc(at) if at else utcnow()
        ttl = max(interval_seconds * 2, self.MIN_TTL_SECONDS)
        await self.kv_store.put(self.key_for(monitor_id), received_at.isoformat(), ttl)
        return received_at

    async def execute(self, config: MonitorConfig, transport: Transport) -> CheckResult:
        try:
            raw = await self.kv_store.get(self.key_for(config.id))
        except PersistenceError as e:
            logger.error(f"Could not read heartbeat for monitor {config.id}: {e}")
            return self._result(STATUS_ERROR, error_message=f"Heartbeat lookup failed: {e}")
        if not raw:
            return self._result(STATUS_DOWN, response_time_ms=0, error_message="No heartbeat received")

        try:
            last_heartbeat = to_naive_utc(datetime.fromisoformat(raw))
        except ValueError:
            return self._result(STATUS_ERROR, error_message=f"Unreadable heartbeat timestamp: {raw!r}")
        age = utcnow() - last_heartbeat
        allowed = timedelta(seconds=config.interval_seconds * 2)
        age_ms = max(0, int(age.total_seconds() * 1000))

        if age <= allowed:
            return self._result(STATUS_UP, response_time_ms=age_ms)

        overdue = round((age - allowed).total_seconds())
        return self._result(
            STATUS_DOWN,
            response_time_ms=age_ms,
            error_message=f"Heartbeat overdue by {overdue}s",
        )
