"""Explicit construction of the pipeline components at process start."""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from kondo_agent.config import Settings
from kondo_agent.services.admission_service import AdmissionClassifier
from kondo_agent.services.conversation_service import (
    ConversationRegistry,
    CounterpartyStore,
    SqlConversationRegistry,
    SqlCounterpartyStore,
)
from kondo_agent.services.llm import OpenAICompatibleProvider
from kondo_agent.services.media_service import HttpMediaEnricher, MediaEnricher, NullMediaEnricher
from kondo_agent.services.orchestrator import Orchestrator
from kondo_agent.services.queue_worker import QueueWorker
from kondo_agent.services.rate_limiter import RateLimiter
from kondo_agent.services.reply_service import LLMReplyGenerator, ReplyGenerator
from kondo_agent.services.whatsapp_service import OutboundGateway, WhatsAppCloudGateway


@dataclass
class Pipeline:
    orchestrator: Orchestrator
    worker: QueueWorker


def build_pipeline(
    settings: Settings,
    session_factory: Callable[[], Session],
    *,
    counterparty_store: Optional[CounterpartyStore] = None,
    registry: Optional[ConversationRegistry] = None,
    enricher: Optional[MediaEnricher] = None,
    reply_generator: Optional[ReplyGenerator] = None,
    gateway: Optional[OutboundGateway] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> Pipeline:
    counterparty_store = counterparty_store or SqlCounterpartyStore()
    registry = registry or SqlConversationRegistry()

    if enricher is None:
        if settings.media_extractor_url:
            enricher = HttpMediaEnricher(settings.media_extractor_url, timeout_seconds=settings.media_timeout_seconds)
        else:
            enricher = NullMediaEnricher()

    reply_generator = reply_generator or LLMReplyGenerator(
        OpenAICompatibleProvider(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            default_model=settings.llm_model,
            timeout_seconds=settings.reply_timeout_seconds,
        )
    )
    gateway = gateway or WhatsAppCloudGateway(
        phone_number_id=settings.whatsapp_phone_number_id,
        access_token=settings.whatsapp_access_token,
        api_version=settings.whatsapp_api_version,
        timeout_seconds=settings.outbound_timeout_seconds,
    )
    rate_limiter = rate_limiter or RateLimiter(
        interval_seconds=settings.rate_limit_seconds,
        scope=settings.rate_limit_scope,
    )

    classifier = AdmissionClassifier(counterparty_store, allow_list=settings.admission_allow_list)
    orchestrator = Orchestrator(
        classifier,
        counterparty_store,
        registry,
        enricher,
        max_retries=settings.queue_max_retries,
    )
    worker = QueueWorker(
        session_factory,
        registry,
        reply_generator,
        gateway,
        rate_limiter,
        history_limit=settings.reply_history_limit,
    )
    return Pipeline(orchestrator=orchestrator, worker=worker)
