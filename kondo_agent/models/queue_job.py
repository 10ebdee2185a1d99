from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text

from kondo_agent.database import Base, JSONType
from kondo_agent.models.agency import _utcnow


class QueueJob(Base):
    """Durable reply job. Rows are never deleted; only status/retry fields change."""

    __tablename__ = "queue_jobs"
    __table_args__ = (Index("ix_queue_jobs_status_created", "status", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_address = Column(Text, nullable=False, index=True)
    message_content = Column(Text, nullable=False)
    external_message_id = Column(Text, nullable=False, unique=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    counterparty_id = Column(Integer, ForeignKey("agencies.id"), nullable=False, index=True)
    payload = Column(JSONType, nullable=False, default=dict)
    admission_metadata = Column(JSONType, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="pending")  # pending, processing, completed, failed
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    processed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    reply_text = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
