"""MonitorCheck model - append-only probe history."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.timeutils import utcnow


class MonitorCheck(Base):
    """One stored probe outcome."""

    __tablename__ = "monitor_checks"
    __table_args__ = (
        Index("ix_monitor_checks_monitor_checked", "monitor_id", "checked_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    monitor_id = Column(Integer, ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=False)  # up, down, timeout, error
    response_time_ms = Column(Integer, nullable=True)
    status_code = Column(Integer, nullable=True)
    error_message = Column(String, nullable=True)
    checked_at = Column(DateTime, default=utcnow, index=True)
    region = Column(String, nullable=True)
    tls_days_remaining = Column(Integer, nullable=True)
    keyword_found = Column(Boolean, nullable=True)

    monitor = relationship("Monitor", back_populates="checks")
