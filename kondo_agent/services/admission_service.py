"""Admission gate: decides whether an inbound sender is a real-estate counterparty.

Rules are evaluated in order and the first match wins:

1. the number already belongs to a registered agency;
2. the number is on the static allow-list (ops / test numbers);
3. the contact carries a WhatsApp Business profile that looks like real estate;
4. free-text scoring of the message itself.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from kondo_agent.logging_config import get_logger
from kondo_agent.services.conversation_service import CounterpartyStore

logger = get_logger("admission_service")

ACCEPT_THRESHOLD = 0.7
CLARIFY_THRESHOLD = 0.3
PROFILE_ACCEPT_THRESHOLD = 0.6

KEYWORD_WEIGHT = 0.3
BUSINESS_WEIGHT = 0.15
OFFER_PATTERN_WEIGHT = 0.2
CONTACT_PATTERN_WEIGHT = 0.15

PROFILE_KEYWORD_SCORE = 0.8
PROFILE_CATEGORY_SCORE = 0.9
PROFILE_CONTENT_WEIGHT = 0.3

REAL_ESTATE_KEYWORDS = (
    "imoveis", "imóveis", "corretor", "corretora", "imobiliaria", "imobiliária",
    "apartamento", "casa", "terreno", "lote", "condominio", "condomínio",
    "venda", "aluguel", "locacao", "locação", "investimento", "propriedade",
    "metro quadrado", "m²", "dormitorio", "dormitório", "suite", "suíte",
    "garagem", "vaga", "financiamento", "creci", "planta", "obra",
    "lancamento", "lançamento", "empreendimento", "construtora",
)

BUSINESS_INDICATORS = (
    "whatsapp", "contato", "telefone", "celular", "email", "site",
    "visita", "apresentar", "mostrar", "oportunidade", "negocio", "negócio",
    "cliente", "interessado", "proposta", "documentacao", "documentação",
    "tabela", "preco", "preço", "valor", "oferta", "promocao", "promoção",
)

REAL_ESTATE_CATEGORIES = (
    "real estate",
    "real estate agent",
    "real estate service",
    "real estate agency",
    "property management",
    "imobiliaria",
    "imoveis",
    "corretor de imoveis",
)

# "I work with / I offer" phrasing, matched on normalized text
OFFER_PATTERNS = (
    re.compile(r"trabalho com"),
    re.compile(r"atuo com"),
    re.compile(r"especializad[oa] em"),
    re.compile(r"ofereco"),
    re.compile(r"tenho\b.{0,60}?\bdisponive(l|is)"),
    re.compile(r"gostaria de apresentar"),
    re.compile(r"oportunidade de"),
    re.compile(r"entre em contato"),
)

CONTACT_PATTERNS = (
    re.compile(r"\(\d{2}\)\s*\d{4,5}-?\d{4}"),
    re.compile(r"\d{2}\s*\d{4,5}-?\d{4}"),
    re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
    re.compile(r"whatsapp"),
    re.compile(r"wa\.me"),
)

# Applied to the raw message so the extracted name keeps its accents and case.
AGENCY_NAME_PATTERNS = (
    re.compile(r"sou da (.+?)(?:\.|,|!|\s*$)", re.IGNORECASE),
    re.compile(r"trabalho na (.+?)(?:\.|,|!|\s*$)", re.IGNORECASE),
    re.compile(r"(.+?) imobili[aá]ria", re.IGNORECASE),
    re.compile(r"imobili[aá]ria (.+?)(?:\.|,|!|\s*$)", re.IGNORECASE),
    re.compile(r"(.+?) im[oó]veis", re.IGNORECASE),
    re.compile(r"meu nome [eé] (.+?)(?:\.|,|!|\s*da|\s*$)", re.IGNORECASE),
)

FALLBACK_AGENCY_NAME = "Agency {address}"


def normalize_text(text: Optional[str]) -> str:
    """Lowercase and strip diacritics ("Imóveis" -> "imoveis")."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _unique_normalized(terms: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for term in terms:
        seen.setdefault(normalize_text(term), None)
    return tuple(seen)


def _term_pattern(term: str) -> re.Pattern:
    return re.compile(r"(?<!\w)" + re.escape(term))


_KEYWORD_PATTERNS = tuple((term, _term_pattern(term)) for term in _unique_normalized(REAL_ESTATE_KEYWORDS))
_BUSINESS_PATTERNS = tuple((term, _term_pattern(term)) for term in _unique_normalized(BUSINESS_INDICATORS))
_CATEGORIES = frozenset(_unique_normalized(REAL_ESTATE_CATEGORIES))


@dataclass(frozen=True)
class MatchedAgency:
    id: int
    display_name: str
    channel_address: str


@dataclass(frozen=True)
class VerificationResult:
    is_accepted: bool
    confidence: float
    reasoning: str
    needs_clarification: bool = False
    matched_agency: Optional[MatchedAgency] = None


@dataclass(frozen=True)
class ContentAnalysis:
    score: float
    keyword_matches: tuple[str, ...]
    business_matches: tuple[str, ...]
    has_offer_phrasing: bool
    has_contact_info: bool


@dataclass(frozen=True)
class BusinessProfile:
    """Subset of the WhatsApp Business profile shared with inbound contacts."""

    business_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    email: Optional[str] = None
    websites: tuple[str, ...] = ()

    def searchable_text(self) -> str:
        parts = [self.business_name, self.description, self.email, *self.websites]
        return " ".join(part for part in parts if part)


@dataclass(frozen=True)
class ProfileMetadata:
    contact_name: Optional[str] = None
    business: Optional[BusinessProfile] = None

    @property
    def is_business_account(self) -> bool:
        return self.business is not None


def analyze_content(text: str) -> ContentAnalysis:
    normalized = normalize_text(text)
    keyword_matches = tuple(term for term, pattern in _KEYWORD_PATTERNS if pattern.search(normalized))
    business_matches = tuple(term for term, pattern in _BUSINESS_PATTERNS if pattern.search(normalized))
    has_offer = any(pattern.search(normalized) for pattern in OFFER_PATTERNS)
    has_contact = any(pattern.search(normalized) for pattern in CONTACT_PATTERNS)

    score = (
        KEYWORD_WEIGHT * len(keyword_matches)
        + BUSINESS_WEIGHT * len(business_matches)
        + (OFFER_PATTERN_WEIGHT if has_offer else 0.0)
        + (CONTACT_PATTERN_WEIGHT if has_contact else 0.0)
    )
    return ContentAnalysis(
        score=round(min(score, 1.0), 4),
        keyword_matches=keyword_matches,
        business_matches=business_matches,
        has_offer_phrasing=has_offer,
        has_contact_info=has_contact,
    )


def profile_score(profile: BusinessProfile) -> float:
    score = 0.0
    profile_text = normalize_text(profile.searchable_text())
    if profile_text and any(pattern.search(profile_text) for _, pattern in _KEYWORD_PATTERNS):
        score = PROFILE_KEYWORD_SCORE
    category = normalize_text(profile.category).strip()
    if category and (category in _CATEGORIES or any(known in category for known in _CATEGORIES)):
        score = max(score, PROFILE_CATEGORY_SCORE)
    return score


def extract_agency_name(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for pattern in AGENCY_NAME_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            name = match.group(1).strip()
            if 2 < len(name) < 50:
                return name
    return None


def agency_display_name(text: Optional[str], channel_address: str) -> str:
    return extract_agency_name(text) or FALLBACK_AGENCY_NAME.format(address=channel_address)


class AdmissionClassifier:
    def __init__(self, counterparty_store: CounterpartyStore, allow_list: Iterable[str] = ()):
        self.counterparty_store = counterparty_store
        self.allow_list = frozenset(address.strip() for address in allow_list if address and address.strip())

    def classify(
        self,
        db: Session,
        channel_address: str,
        message_text: str,
        profile: Optional[ProfileMetadata] = None,
    ) -> VerificationResult:
        log_context = {"channel_address": channel_address}

        try:
            agency = self.counterparty_store.find_by_address(db, channel_address)
        except Exception as exc:
            logger.error(
                "Counterparty lookup failed, rejecting",
                extra={"context": {**log_context, "error": str(exc)}},
            )
            # the failed statement aborts the transaction shared with later events
            db.rollback()
            return VerificationResult(
                is_accepted=False,
                confidence=0.0,
                reasoning="Verification unavailable: counterparty lookup failed",
            )

        if agency is not None:
            logger.info("Known counterparty", extra={"context": {**log_context, "agency_id": agency.id}})
            return VerificationResult(
                is_accepted=True,
                confidence=1.0,
                reasoning="known counterparty",
                matched_agency=MatchedAgency(
                    id=agency.id,
                    display_name=agency.name,
                    channel_address=agency.phone_number,
                ),
            )

        if channel_address in self.allow_list:
            return VerificationResult(is_accepted=True, confidence=1.0, reasoning="allow-listed address")

        content = analyze_content(message_text)

        if profile is not None and profile.business is not None:
            base = profile_score(profile.business)
            if base > 0:
                total = round(min(1.0, base + PROFILE_CONTENT_WEIGHT * content.score), 4)
                logger.info(
                    "Business profile scored",
                    extra={"context": {**log_context, "profile_score": base, "total": total}},
                )
                if total >= PROFILE_ACCEPT_THRESHOLD:
                    return VerificationResult(
                        is_accepted=True,
                        confidence=total,
                        reasoning=f"Business profile matches real estate (profile={base}, content={content.score})",
                    )

        logger.info(
            "Content analysis",
            extra={
                "context": {
                    **log_context,
                    "confidence": content.score,
                    "keywords": list(content.keyword_matches),
                }
            },
        )
        return self._decide_from_content(content)

    def _decide_from_content(self, content: ContentAnalysis) -> VerificationResult:
        keywords = ", ".join(content.keyword_matches)
        if content.score >= ACCEPT_THRESHOLD:
            return VerificationResult(
                is_accepted=True,
                confidence=content.score,
                reasoning=f"High confidence based on real estate keywords: {keywords}",
            )
        if content.score >= CLARIFY_THRESHOLD:
            return VerificationResult(
                is_accepted=False,
                confidence=content.score,
                reasoning=f"Medium confidence - requires clarification. Keywords found: {keywords}",
                needs_clarification=True,
            )
        return VerificationResult(
            is_accepted=False,
            confidence=content.score,
            reasoning="Low confidence - no significant real estate indicators found",
        )
