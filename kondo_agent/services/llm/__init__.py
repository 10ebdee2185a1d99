from kondo_agent.services.llm.base import LLMProvider, LLMResponse
from kondo_agent.services.llm.openai_provider import OpenAICompatibleProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAICompatibleProvider"]
