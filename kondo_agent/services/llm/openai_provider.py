from typing import List, Optional

import httpx

from kondo_agent.logging_config import get_logger
from kondo_agent.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAICompatibleProvider(LLMProvider):
    """Chat completions over any OpenAI-compatible API (xAI Grok, OpenAI)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.x.ai/v1",
        default_model: str = "grok-3-mini",
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = f"{base_url.rstrip('/')}/chat/completions"
        self.timeout_seconds = timeout_seconds

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> LLMResponse:
        """Generate response from the chat completions endpoint."""
        if not self.api_key:
            raise LLMError("LLM API key is not configured", code="not_configured")

        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"LLM request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise LLMError(f"LLM request timed out after {self.timeout_seconds}s", code="timeout") from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"LLM transport error: {exc}", code="http_error") from exc

        logger.debug(f"LLM response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"LLM error: {response.text[:500]}")
            raise LLMError(f"LLM API error: {response.status_code} - {response.text[:200]}")

        data = response.json()
        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"LLM content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
