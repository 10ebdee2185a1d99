from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class MediaObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    filename: Optional[str] = None
    caption: Optional[str] = None
    file_size: Optional[int] = None
    link: Optional[str] = None


class TextObject(BaseModel):
    body: str = ""


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    from_: str = Field(alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[TextObject] = None
    image: Optional[MediaObject] = None
    document: Optional[MediaObject] = None
    video: Optional[MediaObject] = None
    audio: Optional[MediaObject] = None
    sticker: Optional[MediaObject] = None

    def media_object(self) -> Optional[MediaObject]:
        value = getattr(self, self.type, None) if self.type in {"image", "document", "video", "audio", "sticker"} else None
        return value if isinstance(value, MediaObject) else None


class BusinessProfileSchema(BaseModel):
    model_config = ConfigDict(extra="allow")

    business_name: Optional[str] = None
    website: list[str] = []
    email: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None


class ContactProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    business: Optional[BusinessProfileSchema] = None


class Contact(BaseModel):
    wa_id: str
    profile: Optional[ContactProfile] = None


class ChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    contacts: list[Contact] = []
    messages: list[WhatsAppMessage] = []


class Change(BaseModel):
    field: Optional[str] = None
    value: Optional[ChangeValue] = None


class Entry(BaseModel):
    id: Optional[str] = None
    changes: list[Change] = []


class WebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[Entry] = []


class MessageOutcome(BaseModel):
    external_message_id: str
    accepted: bool
    queued: bool
    confidence: float = 0.0
    needs_clarification: bool = False


class WebhookResponse(BaseModel):
    success: bool
    message: str
    results: list[MessageOutcome] = []
