"""Incident model - contiguous spans of non-up status."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.timeutils import utcnow


class Incident(Base):
    """A down period for one monitor. Open while ``resolved_at`` is NULL."""

    __tablename__ = "incidents"
    __table_args__ = (
        # At most one open incident per monitor
        Index(
            "uq_incidents_open_per_monitor",
            "monitor_id",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    monitor_id = Column(Integer, ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String, nullable=False, default="investigating")  # investigating, identified, monitoring, resolved
    started_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    cause = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    monitor = relationship("Monitor", back_populates="incidents")
