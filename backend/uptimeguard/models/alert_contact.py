"""Alert contacts and their monitor bindings."""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Text
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils.timeutils import utcnow


class AlertContact(Base):
    """A notification destination - email, webhook, discord, slack or telegram."""

    __tablename__ = "alert_contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    destination = Column(String, nullable=False)  # email address or webhook URL
    settings = Column(Text, nullable=True)  # JSON: auth_token, headers, bot_token, chat_id, ...
    is_active = Column(Boolean, default=True)
    is_enabled = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    monitor_links = relationship("MonitorContact", back_populates="contact", cascade="all, delete-orphan")


class MonitorContact(Base):
    """Binding of a contact to a monitor with per-binding notification policy."""

    __tablename__ = "monitor_contacts"

    monitor_id = Column(Integer, ForeignKey("monitors.id", ondelete="CASCADE"), primary_key=True)
    contact_id = Column(Integer, ForeignKey("alert_contacts.id", ondelete="CASCADE"), primary_key=True)
    notify_on_down = Column(Boolean, default=True)
    notify_on_up = Column(Boolean, default=True)
    delay_minutes = Column(Integer, default=0)

    monitor = relationship("Monitor", back_populates="contact_links")
    contact = relationship("AlertContact", back_populates="monitor_links")
