from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import relationship

from kondo_agent.database import Base, JSONType
from kondo_agent.models.agency import _utcnow


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (Index("ix_conversations_agency_address", "agency_id", "channel_address", "status"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    agency_id = Column(Integer, ForeignKey("agencies.id"), nullable=False)
    channel_address = Column(Text, nullable=False)  # WhatsApp number (wa_id)
    status = Column(Text, nullable=False, default="active")  # active, closed
    display_name = Column(Text)
    conversation_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    agency = relationship("Agency", back_populates="conversations")
    messages = relationship("ConversationMessage", back_populates="conversation")
