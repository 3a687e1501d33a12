"""Ephemeral key-value entries with their own expiry."""
from sqlalchemy import Column, String, DateTime, Text

from ..database import Base


class EphemeralEntry(Base):
    """Heartbeats, pending notifications and dedup markers."""

    __tablename__ = "ephemeral_kv"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
