"""AlertLog model - per-contact delivery log."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from ..database import Base
from ..utils.timeutils import utcnow


class AlertLog(Base):
    """Record of one notification attempt to one contact."""

    __tablename__ = "alert_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    monitor_id = Column(Integer, ForeignKey("monitors.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("alert_contacts.id", ondelete="CASCADE"), nullable=False)
    type = Column(String, nullable=False)  # down, up
    status = Column(String, nullable=False)  # sent, failed
    message = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
