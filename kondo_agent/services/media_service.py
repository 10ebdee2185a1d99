"""Best-effort enrichment of media messages before they enter the reply queue.

Enrichers never raise: any failure is reported as ``handled=False`` and the
orchestrator falls back to a fixed placeholder for the media kind.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from kondo_agent.logging_config import get_logger

logger = get_logger("media_service")

PROCESSABLE_MEDIA_KINDS = frozenset({"document", "image", "video"})
MEDIA_KINDS = frozenset({"document", "image", "video", "audio", "sticker"})

_FILE_TYPE_LABELS = {
    "document": "Documento recebido",
    "image": "Imagem recebida",
    "video": "Vídeo recebido",
}


@dataclass
class EnrichmentResult:
    handled: bool
    text: Optional[str] = None
    enhanced_ref: Optional[dict[str, Any]] = None
    meta: dict[str, Any] = field(default_factory=dict)


def fallback_content(media_kind: str, media_ref: Optional[dict[str, Any]] = None) -> str:
    filename = (media_ref or {}).get("filename") or "arquivo"
    label = _FILE_TYPE_LABELS.get(media_kind, "Arquivo recebido")
    return f"[{label}: {filename}]"


def build_enhanced_content(media_kind: str, filename: str, extracted_text: str, details: dict[str, Any]) -> str:
    label = _FILE_TYPE_LABELS.get(media_kind, "Arquivo recebido")
    content = f"[{label}: {filename}]\n\n"

    if extracted_text and extracted_text.strip():
        content += "--- CONTEÚDO EXTRAÍDO ---\n"
        content += extracted_text.strip()

    tables = details.get("tablesCount") or 0
    images = details.get("imagesCount") or 0
    if tables:
        content += f"\n\n--- {tables} TABELA(S) ENCONTRADA(S) ---\n[Dados de tabelas disponíveis para análise]"
    if images:
        content += f"\n\n--- {images} IMAGEM(NS) EXTRAÍDA(S) ---\n[Imagens extraídas do documento disponíveis]"
    if details.get("pageCount"):
        content += f"\n\n--- INFORMAÇÕES DO ARQUIVO ---\nPáginas: {details['pageCount']}"

    return content.strip()


class MediaEnricher(ABC):
    @abstractmethod
    def process(
        self,
        media_kind: str,
        media_ref: Optional[dict[str, Any]],
        external_message_id: str,
        counterparty_id: int,
    ) -> EnrichmentResult:
        """Extract text from the media. Must not raise."""
        pass


class NullMediaEnricher(MediaEnricher):
    """Used when no extraction service is configured."""

    def process(self, media_kind, media_ref, external_message_id, counterparty_id) -> EnrichmentResult:
        return EnrichmentResult(handled=False, meta={"reason": "extractor_not_configured"})


class HttpMediaEnricher(MediaEnricher):
    """Delegates extraction (PDF parsing, OCR, storage upload) to an HTTP service.

    Expected response: {"extracted_text": str, "upload_url": str?, "details": {...}}.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 45.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def process(
        self,
        media_kind: str,
        media_ref: Optional[dict[str, Any]],
        external_message_id: str,
        counterparty_id: int,
    ) -> EnrichmentResult:
        log_context = {"media_kind": media_kind, "external_message_id": external_message_id}
        if media_kind not in PROCESSABLE_MEDIA_KINDS or not media_ref:
            return EnrichmentResult(handled=False, meta={"reason": "unsupported_media"})

        started = time.monotonic()
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    f"{self.base_url}/extract",
                    json={
                        "media_kind": media_kind,
                        "media": media_ref,
                        "message_id": external_message_id,
                        "agency_id": counterparty_id,
                    },
                )
            elapsed_ms = round((time.monotonic() - started) * 1000, 2)
            if response.status_code != 200:
                logger.warning(
                    "Media extraction failed",
                    extra={"context": {**log_context, "status": response.status_code, "elapsed_ms": elapsed_ms}},
                )
                return EnrichmentResult(
                    handled=False,
                    meta={"processing_failed": True, "error": f"status {response.status_code}", "elapsed_ms": elapsed_ms},
                )

            data = response.json() or {}
            details = data.get("details") or {}
            filename = media_ref.get("filename") or "arquivo"
            text = build_enhanced_content(media_kind, filename, data.get("extracted_text") or "", details)
            enhanced_ref = {**media_ref, "upload_url": data.get("upload_url"), "extraction_details": details}
            logger.info(
                "Media extracted",
                extra={"context": {**log_context, "chars": len(data.get("extracted_text") or ""), "elapsed_ms": elapsed_ms}},
            )
            return EnrichmentResult(
                handled=True,
                text=text,
                enhanced_ref=enhanced_ref,
                meta={"processing_successful": True, "elapsed_ms": elapsed_ms},
            )
        except Exception as exc:
            logger.error("Media extraction error", extra={"context": {**log_context, "error": str(exc)}})
            return EnrichmentResult(handled=False, meta={"processing_failed": True, "error": str(exc)})
