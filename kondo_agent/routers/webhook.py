from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from kondo_agent.config import settings
from kondo_agent.database import get_db
from kondo_agent.logging_config import get_logger
from kondo_agent.schemas.webhook import (
    Contact,
    MessageOutcome,
    WebhookPayload,
    WebhookResponse,
    WhatsAppMessage,
)
from kondo_agent.services.admission_service import BusinessProfile, ProfileMetadata
from kondo_agent.services.orchestrator import InboundEvent, Orchestrator
from kondo_agent.services.queue_service import build_external_message_id

logger = get_logger("webhook")

router = APIRouter()

WHATSAPP_OBJECT = "whatsapp_business_account"
MEDIA_PLACEHOLDER = "[Media message]"


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.pipeline.orchestrator


def _profile_metadata(contact: Contact | None) -> ProfileMetadata | None:
    if contact is None or contact.profile is None:
        return None
    business = None
    if contact.profile.business is not None:
        schema = contact.profile.business
        business = BusinessProfile(
            business_name=schema.business_name,
            description=schema.description,
            category=schema.category,
            email=schema.email,
            websites=tuple(schema.website),
        )
    return ProfileMetadata(contact_name=contact.profile.name, business=business)


def _media_ref(message: WhatsAppMessage) -> dict | None:
    media = message.media_object()
    if media is None or not media.id:
        return None
    return {
        "media_id": media.id,
        "filename": media.filename or f"media_{message.id}",
        "mime_type": media.mime_type,
        "sha256": media.sha256,
        "size": media.file_size,
        "caption": media.caption,
    }


def extract_events(payload: WebhookPayload) -> list[InboundEvent]:
    """Flatten a Cloud API webhook into inbound events, pairing each message with its contact."""
    events: list[InboundEvent] = []
    if payload.object != WHATSAPP_OBJECT:
        return events

    for entry in payload.entry:
        for change in entry.changes:
            if change.value is None:
                continue
            contacts = {contact.wa_id: contact for contact in change.value.contacts}
            for message in change.value.messages:
                if message.type == "text":
                    text = message.text.body if message.text else ""
                else:
                    media = message.media_object()
                    text = (media.caption if media and media.caption else None) or MEDIA_PLACEHOLDER
                events.append(
                    InboundEvent(
                        channel_address=message.from_,
                        text=text,
                        external_message_id=build_external_message_id(
                            message.id, message.from_, message.timestamp, text
                        ),
                        message_type=message.type,
                        media=_media_ref(message),
                        profile=_profile_metadata(contacts.get(message.from_)),
                    )
                )
    return events


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    mode: str = Query("", alias="hub.mode"),
    verify_token: str = Query("", alias="hub.verify_token"),
    challenge: str = Query("", alias="hub.challenge"),
):
    """WhatsApp subscription handshake."""
    if mode == "subscribe" and settings.whatsapp_verify_token and verify_token == settings.whatsapp_verify_token:
        logger.info("Webhook verified")
        return challenge
    logger.warning(f"Webhook verification failed: mode={mode}")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhook", response_model=WebhookResponse)
def receive_webhook(
    payload: WebhookPayload,
    db: Session = Depends(get_db),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Admit and queue inbound messages. Replies are sent later by the queue worker."""
    results: list[MessageOutcome] = []

    for event in extract_events(payload):
        try:
            outcome = orchestrator.process_message(db, event)
        except Exception as exc:
            logger.error(
                "Inbound message processing failed",
                extra={"context": {"external_message_id": event.external_message_id, "error": str(exc)}},
                exc_info=True,
            )
            db.rollback()
            results.append(MessageOutcome(external_message_id=event.external_message_id, accepted=False, queued=False))
            continue

        results.append(
            MessageOutcome(
                external_message_id=event.external_message_id,
                accepted=outcome.accepted,
                queued=outcome.queued,
                confidence=outcome.confidence,
                needs_clarification=outcome.needs_clarification,
            )
        )

    queued = sum(1 for result in results if result.queued)
    return WebhookResponse(success=True, message=f"received={len(results)} queued={queued}", results=results)
