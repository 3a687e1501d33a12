"""DailyStat model - per monitor per day rollup."""
from sqlalchemy import Column, Integer, Float, Date, DateTime, ForeignKey, UniqueConstraint

from ..database import Base


class DailyStat(Base):
    """Daily rollup. Upserted on every check, replaced by the nightly aggregator."""

    __tablename__ = "uptime_stats"
    __table_args__ = (
        UniqueConstraint("monitor_id", "date", name="uq_uptime_stats_monitor_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    monitor_id = Column(Integer, ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False, index=True)
    total_checks = Column(Integer, default=0, nullable=False)
    successful_checks = Column(Integer, default=0, nullable=False)  # up checks
    down_checks = Column(Integer, default=0, nullable=False)
    uptime_percentage = Column(Float, default=100.0)
    avg_response_time_ms = Column(Float, nullable=True)
    min_response_time_ms = Column(Integer, nullable=True)
    max_response_time_ms = Column(Integer, nullable=True)
    response_samples = Column(Integer, default=0, nullable=False)  # checks folded into the average
    downtime_minutes = Column(Integer, default=0, nullable=False)
    downtime_incidents = Column(Integer, default=0, nullable=False)
    finalized_at = Column(DateTime, nullable=True)  # set by the nightly aggregator only
