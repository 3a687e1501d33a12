"""Monitor configuration snapshot handed to the probe executor."""
import json
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class MonitorKind(str, Enum):
    HTTP = "http"
    HTTPS = "https"
    PING = "ping"
    PORT = "port"
    KEYWORD = "keyword"
    TLS = "tls"
    HEARTBEAT = "heartbeat"


class AuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"


class KeywordType(str, Enum):
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class MonitorConfig(BaseModel):
    """Immutable per-check snapshot of a monitor row.

    ``kind`` stays a plain string so an unsupported kind reaches the executor
    and is rejected there rather than while loading the row.
    """
    id: int
    name: str = ""
    kind: str
    url: Optional[str] = None
    hostname: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    auth_type: AuthType = AuthType.NONE
    auth_username: Optional[str] = None
    auth_password: Optional[str] = None
    auth_token: Optional[str] = None
    interval_seconds: int = 300
    timeout_seconds: float = 30
    retry_count: int = 3
    expected_status_codes: Optional[str] = "200-299"
    keyword: Optional[str] = None
    keyword_type: KeywordType = KeywordType.EXISTS
    follow_redirects: bool = True
    verify_tls: bool = True

    class Config:
        from_attributes = True
        frozen = True

    @field_validator("headers", mode="before")
    @classmethod
    def _decode_headers(cls, value):
        # Stored as a JSON string on the monitor row
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value):
        return (value or "GET").upper()

    @field_validator("auth_type", mode="before")
    @classmethod
    def _default_auth(cls, value):
        return value or AuthType.NONE

    @field_validator("keyword_type", mode="before")
    @classmethod
    def _default_keyword_type(cls, value):
        return value or KeywordType.EXISTS

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value):
        kind = (value or "").lower()
        # Older rows call TLS monitors "ssl"
        return MonitorKind.TLS.value if kind == "ssl" else kind


class MonitorSnapshot(BaseModel):
    """Identity fields the dispatcher needs about a monitor."""
    id: int
    name: str
    url: Optional[str] = None
    hostname: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True

    @property
    def target(self) -> str:
        return self.url or self.hostname or ""


class CheckResultResponse(BaseModel):
    status: str
    checked_at: datetime
    region: str
    response_time_ms: Optional[int] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    tls_days_remaining: Optional[int] = None
    keyword_found: Optional[bool] = None

    class Config:
        from_attributes = True


class MonitorTestResponse(BaseModel):
    """Outcome of test-firing one monitor through the full pipeline."""
    monitor_id: int
    result: Optional[CheckResultResponse] = None
    check_id: Optional[int] = None
    transition: Optional[str] = None  # e.g. "up -> down"
    notifications_sent: int = 0
    errors: List[str] = Field(default_factory=list)


class HeartbeatResponse(BaseModel):
    monitor_id: int
    received_at: datetime
    status: str = "ok"
