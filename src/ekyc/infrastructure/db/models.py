"""
Database Models — SQLAlchemy.

Tables:
  - ekyc_sessions: one row per verification session. The aggregate is
    stored whole as a JSON document; the indexed columns only serve
    eviction, expiry and listing.
"""

from sqlalchemy import Column, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class SessionRecord(Base):
    """Persisted verification session."""
    __tablename__ = "ekyc_sessions"

    id = Column(String(64), primary_key=True)
    document_type = Column(String(20), nullable=False)
    stage = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, index=True)

    # Epoch seconds (UTC); compared against the store clock
    created_at = Column(Float, nullable=False, index=True)
    last_activity_at = Column(Float, nullable=False, index=True)

    payload = Column(Text, nullable=False)
    payload_size = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<SessionRecord {self.id} [{self.status}/{self.stage}] {self.payload_size}B>"
