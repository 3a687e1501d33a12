"""Error taxonomy for the monitoring core.

Transport and timeout errors never leave a probe: they are turned into a
check result. Validation errors end the cycle of a single monitor.
Persistence and delivery errors are caught where they happen, logged, and
collected on the cycle report.
"""


class UptimeGuardError(Exception):
    """Base class for all monitoring core errors."""


class TransportError(UptimeGuardError):
    """Network, DNS or connection-refused failure while probing."""


class ProbeTimeoutError(UptimeGuardError):
    """A bounded probe call exceeded its timeout."""

    def __init__(self, timeout_seconds: float, message: str | None = None):
        self.timeout_seconds = timeout_seconds
        super().__init__(message or f"Request timeout after {timeout_seconds:g}s")


class ConfigValidationError(UptimeGuardError):
    """Unknown monitor kind or malformed monitor configuration."""


class PersistenceError(UptimeGuardError):
    """A datastore read or write failed."""


class DeliveryError(UptimeGuardError):
    """A notification channel call failed."""
