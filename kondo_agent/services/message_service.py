from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from kondo_agent.models import ConversationMessage

DIRECTION_INCOMING = "incoming"
DIRECTION_OUTGOING = "outgoing"


def save_message(
    db: Session,
    conversation_id: int,
    direction: str,
    content: str,
    message_type: str = "text",
    external_message_id: Optional[str] = None,
    message_metadata: Optional[dict] = None,
) -> ConversationMessage:
    """Save message to database."""
    message = ConversationMessage(
        conversation_id=conversation_id,
        external_message_id=external_message_id,
        direction=direction,
        message_type=message_type,
        content=content,
        message_metadata=message_metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def get_history(
    db: Session,
    conversation_id: int,
    *,
    limit: int = 10,
    before: Optional[datetime] = None,
    exclude_external_id: Optional[str] = None,
) -> list[ConversationMessage]:
    """Last `limit` messages of a conversation, oldest first.

    `before` only cuts off incoming messages: replies already sent for
    earlier jobs stay visible even when they were sent after the cutoff.
    """
    query = db.query(ConversationMessage).filter(ConversationMessage.conversation_id == conversation_id)
    if before is not None:
        query = query.filter(
            or_(
                ConversationMessage.direction == DIRECTION_OUTGOING,
                ConversationMessage.created_at <= before,
            )
        )
    if exclude_external_id:
        query = query.filter(
            (ConversationMessage.external_message_id.is_(None))
            | (ConversationMessage.external_message_id != exclude_external_id)
        )
    rows = query.order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc()).limit(limit).all()
    return list(reversed(rows))
