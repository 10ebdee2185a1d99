from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class QueueStatsResponse(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class QueueJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    channel_address: str
    external_message_id: str
    conversation_id: int
    counterparty_id: int
    status: str
    retry_count: int
    max_retries: int
    admission_metadata: dict[str, Any] = {}
    error_message: Optional[str] = None
    reply_text: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
