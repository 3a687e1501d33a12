"""Monitor model - targets being probed."""
from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, Text
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.timeutils import utcnow


class Monitor(Base):
    """A monitored target - http, https, ping, port, keyword, tls or heartbeat."""

    __tablename__ = "monitors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # http, https, ping, port, keyword, tls, heartbeat

    # Target
    url = Column(String, nullable=True)  # http/https/keyword/tls
    hostname = Column(String, nullable=True)  # ping/port/tls
    port = Column(Integer, nullable=True)

    # Request options
    method = Column(String, default="GET")
    headers = Column(Text, nullable=True)  # JSON object
    body = Column(Text, nullable=True)
    auth_type = Column(String, default="none")  # none, basic, bearer
    auth_username = Column(String, nullable=True)
    auth_password = Column(String, nullable=True)
    auth_token = Column(String, nullable=True)

    # Timing
    interval_seconds = Column(Integer, default=300)
    timeout_seconds = Column(Integer, default=30)
    retry_count = Column(Integer, default=3)

    # Validation
    expected_status_codes = Column(String, default="200-299")
    keyword = Column(String, nullable=True)
    keyword_type = Column(String, default="exists")  # exists, not_exists
    follow_redirects = Column(Boolean, default=True)
    verify_tls = Column(Boolean, default=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    # Rolling summaries maintained by the nightly aggregator
    uptime_7d = Column(Float, nullable=True)
    uptime_30d = Column(Float, nullable=True)
    avg_response_time_30d = Column(Integer, nullable=True)
    stats_updated_at = Column(DateTime, nullable=True)

    # Relationships
    checks = relationship("MonitorCheck", back_populates="monitor", cascade="all, delete-orphan")
    incidents = relationship("Incident", back_populates="monitor", cascade="all, delete-orphan")
    contact_links = relationship("MonitorContact", back_populates="monitor", cascade="all, delete-orphan")
