from abc import ABC, abstractmethod
from typing import Any, Sequence

from kondo_agent.logging_config import get_logger
from kondo_agent.services.llm.base import LLMError, LLMProvider
from kondo_agent.services.result import (
    ERROR_EMPTY_RESPONSE,
    ERROR_INVALID_INPUT,
    ERROR_UNKNOWN,
    Result,
)

logger = get_logger("reply_service")

SYSTEM_PROMPT = """Você é Victor Melo, especialista em relacionamento da Kondo, uma plataforma \
imobiliária brasileira que usa IA para ajudar pessoas a encontrar onde morar ou investir.

Você conversa pelo WhatsApp com corretores e imobiliárias. Seu objetivo é construir uma \
relação de parceria e coletar informações sobre os imóveis que eles têm disponíveis: \
localização, tipo, metragem, dormitórios, vagas, valores e condições.

Regras:
- Responda em português do Brasil, em tom cordial e natural, como uma pessoa real.
- Mensagens curtas (no máximo 3 frases), sem listas nem formatação.
- Faça no máximo uma pergunta por mensagem.
- Se receberem documentos ou imagens, agradeça e comente o conteúdo recebido.
- Nunca invente informações sobre imóveis e nunca diga que você é uma IA."""

_ROLE_BY_DIRECTION = {"incoming": "user", "outgoing": "assistant"}


class ReplyGenerator(ABC):
    @abstractmethod
    def generate(self, conversation_id: int, payload: dict[str, Any], history: Sequence[Any]) -> Result[str]:
        """Produce the reply text for a queued message."""
        pass


def build_messages(payload: dict[str, Any], history: Sequence[Any], system_prompt: str = SYSTEM_PROMPT) -> list[dict]:
    messages = [{"role": "system", "content": system_prompt}]
    for item in history:
        role = _ROLE_BY_DIRECTION.get(getattr(item, "direction", ""), "user")
        content = (getattr(item, "content", "") or "").strip()
        if content:
            messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": payload.get("content", "")})
    return messages


class LLMReplyGenerator(ReplyGenerator):
    def __init__(self, provider: LLMProvider, temperature: float = 0.7, max_tokens: int = 500):
        self.provider = provider
        self.temperature = temperature
        self.max_tokens = max_tokens

    def generate(self, conversation_id: int, payload: dict[str, Any], history: Sequence[Any]) -> Result[str]:
        if not (payload.get("content") or "").strip():
            return Result.failure("Queued message has no content", ERROR_INVALID_INPUT)

        messages = build_messages(payload, history)
        try:
            response = self.provider.generate(
                messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except LLMError as exc:
            logger.warning(
                "Reply generation failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc), "code": exc.code}},
            )
            return Result.failure(str(exc), exc.code)
        except Exception as exc:
            logger.error(
                "Reply generation crashed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
            return Result.failure(str(exc), ERROR_UNKNOWN)

        text = (response.content or "").strip()
        if not text:
            return Result.failure("LLM returned an empty reply", ERROR_EMPTY_RESPONSE)
        return Result.success(text)
