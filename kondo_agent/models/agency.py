from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Text
from sqlalchemy.orm import relationship

from kondo_agent.database import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Agency(Base):
    """A real-estate agency (the counterparty) identified by its WhatsApp number."""

    __tablename__ = "agencies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    phone_number = Column(Text, nullable=False, unique=True, index=True)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    agency_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    conversations = relationship("Conversation", back_populates="agency")
