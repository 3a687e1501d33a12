"""Checker service - runs one probe for one monitor configuration."""
import asyncio
import logging
from typing import Dict, Optional

from ..config import settings
from ..errors import ConfigValidationError
from ..schemas.monitor import MonitorConfig, MonitorKind
from .kv_store import EphemeralStore
from .probes import (
    CertificateInspector,
    HeartbeatProbe,
    HttpProbe,
    KeywordProbe,
    PingProbe,
    PortProbe,
    Probe,
    TlsProbe,
)
from .results import STATUS_TIMEOUT, CheckResult
from .transport import Transport
from ..utils.timeutils import utcnow

logger = logging.getLogger(__name__)

# Slack on top of a monitor's own timeout before the executor gives up on a probe
TIMEOUT_GRACE_SECONDS = 1.0


class ProbeExecutor:
    """Dispatches a monitor configuration to the probe for its kind."""

    def __init__(
        self,
        kv_store: EphemeralStore,
        transport: Optional[Transport] = None,
        region: Optional[str] = None,
        certificate_inspector: Optional[CertificateInspector] = None,
    ):
        self.transport = transport or Transport()
        self.region = region or settings.region
        http = HttpProbe(self.region)
        self.heartbeat = HeartbeatProbe(self.region, kv_store)
        self.probes: Dict[str, Probe] = {
            MonitorKind.HTTP.value: http,
            MonitorKind.HTTPS.value: http,
            MonitorKind.KEYWORD.value: KeywordProbe(self.region),
            MonitorKind.PING.value: PingProbe(self.region),
            MonitorKind.PORT.value: PortProbe(self.region),
            MonitorKind.TLS.value: TlsProbe(
                self.region,
                placeholder_days=settings.tls_placeholder_days,
                inspector=certificate_inspector,
            ),
            MonitorKind.HEARTBEAT.value: self.heartbeat,
        }

    def probe_for(self, kind: str) -> Probe:
        probe = self.probes.get(kind)
        if probe is None:
            raise ConfigValidationError(f"Unsupported monitor type: {kind}")
        return probe

    async def execute(self, config: MonitorConfig) -> CheckResult:
        """Run the probe for ``config``.

        Never raises for network problems; those come back as a down, timeout
        or error result. Raises ``ConfigValidationError`` for an unsupported
        kind or an invalid configuration.
        """
        probe = self.probe_for(config.kind)
        logger.debug(f"Checking monitor: {config.name} ({config.kind})")

        limit = config.timeout_seconds + TIMEOUT_GRACE_SECONDS
        try:
            return await asyncio.wait_for(probe.execute(config, self.transport), timeout=limit)
        except asyncio.TimeoutError:
            return CheckResult(
                status=STATUS_TIMEOUT,
                checked_at=utcnow(),
                region=self.region,
                response_time_ms=int(limit * 1000),
                error_message=f"Request timeout after {config.timeout_seconds:g}s",
            )
