"""Turns an inbound WhatsApp message into a queued reply job.

The outcome is returned synchronously and never contains a reply: delivery
happens later in the queue worker. Rejected senders leave no record at all.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kondo_agent.logging_config import get_logger
from kondo_agent.services import queue_service
from kondo_agent.services.admission_service import (
    AdmissionClassifier,
    ProfileMetadata,
    VerificationResult,
    agency_display_name,
)
from kondo_agent.services.conversation_service import ConversationRegistry, CounterpartyStore
from kondo_agent.services.media_service import (
    MEDIA_KINDS,
    EnrichmentResult,
    MediaEnricher,
    fallback_content,
)
from kondo_agent.services.message_service import DIRECTION_INCOMING

logger = get_logger("orchestrator")


@dataclass
class InboundEvent:
    channel_address: str
    text: str
    external_message_id: str
    message_type: str = "text"
    media: Optional[dict[str, Any]] = None
    profile: Optional[ProfileMetadata] = None

    @property
    def has_media(self) -> bool:
        return self.message_type in MEDIA_KINDS and bool(self.media)


@dataclass
class ProcessOutcome:
    accepted: bool
    queued: bool
    confidence: float = 0.0
    needs_clarification: bool = False
    job_id: Optional[int] = None
    conversation_id: Optional[int] = None
    detail: Optional[str] = None


@dataclass
class _EnrichedMessage:
    content: str
    payload: dict[str, Any] = field(default_factory=dict)


class Orchestrator:
    def __init__(
        self,
        classifier: AdmissionClassifier,
        counterparty_store: CounterpartyStore,
        registry: ConversationRegistry,
        enricher: MediaEnricher,
        *,
        max_retries: int = queue_service.DEFAULT_MAX_RETRIES,
    ):
        self.classifier = classifier
        self.counterparty_store = counterparty_store
        self.registry = registry
        self.enricher = enricher
        self.max_retries = max_retries

    def process_message(self, db: Session, event: InboundEvent) -> ProcessOutcome:
        log_context = {"channel_address": event.channel_address, "external_message_id": event.external_message_id}

        # 1. Admission gate
        verification = self.classifier.classify(db, event.channel_address, event.text, event.profile)
        if not verification.is_accepted:
            logger.info(
                "Sender not admitted, ignoring",
                extra={"context": {**log_context, "confidence": verification.confidence}},
            )
            return ProcessOutcome(
                accepted=False,
                queued=False,
                confidence=verification.confidence,
                needs_clarification=verification.needs_clarification,
                detail=verification.reasoning,
            )

        try:
            existing = queue_service.find_job_by_external_id(db, event.external_message_id)
            if existing is not None:
                return ProcessOutcome(
                    accepted=True,
                    queued=True,
                    confidence=verification.confidence,
                    job_id=existing.id,
                    conversation_id=existing.conversation_id,
                    detail="duplicate",
                )

            # 2. Counterparty
            agency_id, agency_name = self._resolve_counterparty(db, event, verification)

            # 3. Conversation
            conversation = self.registry.find_or_create(db, agency_id, event.channel_address, agency_name)

            # 4. Media enrichment (best effort)
            enriched = self._enrich(event, agency_id)

            self.registry.save_message(
                db,
                conversation.id,
                DIRECTION_INCOMING,
                enriched.content,
                message_type=event.message_type,
                external_message_id=event.external_message_id,
                message_metadata={"media": enriched.payload.get("media")} if event.has_media else None,
            )

            # 5. Durable enqueue
            job, _created = queue_service.enqueue_job(
                db,
                channel_address=event.channel_address,
                message_content=enriched.content,
                external_message_id=event.external_message_id,
                conversation_id=conversation.id,
                counterparty_id=agency_id,
                payload=enriched.payload,
                admission_metadata={
                    "confidence": verification.confidence,
                    "reasoning": verification.reasoning,
                    "agent_name": agency_name,
                },
                max_retries=self.max_retries,
            )
            db.commit()
        except IntegrityError as exc:
            # a concurrent delivery of the same message won the insert
            db.rollback()
            existing = queue_service.find_job_by_external_id(db, event.external_message_id)
            if existing is None:
                logger.error(
                    "Failed to queue admitted message",
                    extra={"context": {**log_context, "error": str(exc)}},
                    exc_info=True,
                )
                return ProcessOutcome(
                    accepted=True,
                    queued=False,
                    confidence=verification.confidence,
                    detail="persistence_error",
                )
            logger.info("Message already queued by a concurrent delivery", extra={"context": log_context})
            return ProcessOutcome(
                accepted=True,
                queued=True,
                confidence=verification.confidence,
                job_id=existing.id,
                conversation_id=existing.conversation_id,
                detail="duplicate",
            )
        except Exception as exc:
            db.rollback()
            logger.error(
                "Failed to queue admitted message",
                extra={"context": {**log_context, "error": str(exc)}},
                exc_info=True,
            )
            return ProcessOutcome(
                accepted=True,
                queued=False,
                confidence=verification.confidence,
                detail="persistence_error",
            )

        # 6. Return without waiting for the reply
        return ProcessOutcome(
            accepted=True,
            queued=True,
            confidence=verification.confidence,
            job_id=job.id,
            conversation_id=conversation.id,
        )

    def _resolve_counterparty(
        self, db: Session, event: InboundEvent, verification: VerificationResult
    ) -> tuple[int, str]:
        if verification.matched_agency is not None:
            return verification.matched_agency.id, verification.matched_agency.display_name

        name = agency_display_name(event.text, event.channel_address)
        agency = self.counterparty_store.create(
            db,
            event.channel_address,
            name,
            confidence=verification.confidence,
            first_message=event.text,
        )
        return agency.id, agency.name

    def _enrich(self, event: InboundEvent, agency_id: int) -> _EnrichedMessage:
        payload: dict[str, Any] = {"message_type": event.message_type, "media": event.media}
        if event.profile is not None and event.profile.contact_name:
            payload["contact_name"] = event.profile.contact_name

        if not event.has_media:
            return _EnrichedMessage(content=event.text, payload=payload)

        try:
            result = self.enricher.process(event.message_type, event.media, event.external_message_id, agency_id)
        except Exception as exc:
            logger.warning(
                "Media enricher raised, using fallback",
                extra={"context": {"external_message_id": event.external_message_id, "error": str(exc)}},
            )
            result = EnrichmentResult(handled=False, meta={"processing_failed": True, "error": str(exc)})

        payload["enrichment"] = {"handled": result.handled, **result.meta}
        if result.handled and result.text:
            payload["media"] = result.enhanced_ref or event.media
            return _EnrichedMessage(content=result.text, payload=payload)

        return _EnrichedMessage(content=fallback_content(event.message_type, event.media), payload=payload)
