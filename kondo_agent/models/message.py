from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship

from kondo_agent.database import Base, JSONType
from kondo_agent.models.agency import _utcnow


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    external_message_id = Column(Text, index=True)
    direction = Column(Text, nullable=False)  # incoming, outgoing
    message_type = Column(Text, nullable=False, default="text")
    content = Column(Text, nullable=False)
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    conversation = relationship("Conversation", back_populates="messages")
