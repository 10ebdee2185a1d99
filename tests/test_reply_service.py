from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from kondo_agent.services.llm import LLMResponse, OpenAICompatibleProvider
from kondo_agent.services.llm.base import LLMError
from kondo_agent.services.reply_service import SYSTEM_PROMPT, LLMReplyGenerator, build_messages


def _history():
    return [
        SimpleNamespace(direction="incoming", content="Oi, sou da Prime Imóveis"),
        SimpleNamespace(direction="outgoing", content="Olá! Que bom falar com você."),
    ]


class TestBuildMessages:
    def test_history_roles_and_current_message_last(self):
        messages = build_messages({"content": "Tenho um lançamento"}, _history())

        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "Tenho um lançamento"


class TestLLMReplyGenerator:
    def test_success(self):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content="  Que ótimo! Onde fica?  ", model="grok-3-mini")

        result = LLMReplyGenerator(provider).generate(1, {"content": "Tenho um lançamento"}, _history())

        assert result.ok is True
        assert result.value == "Que ótimo! Onde fica?"
        messages = provider.generate.call_args[0][0]
        assert len(messages) == 4

    def test_empty_content_is_invalid_input(self):
        provider = Mock()
        result = LLMReplyGenerator(provider).generate(1, {"content": "  "}, [])
        assert result.error_code == "invalid_input"
        provider.generate.assert_not_called()

    def test_empty_reply(self):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content="", model="grok-3-mini")
        result = LLMReplyGenerator(provider).generate(1, {"content": "oi"}, [])
        assert result.error_code == "empty_response"

    def test_provider_error_code_is_kept(self):
        provider = Mock()
        provider.generate.side_effect = LLMError("timed out", code="timeout")
        result = LLMReplyGenerator(provider).generate(1, {"content": "oi"}, [])
        assert result.ok is False
        assert result.error_code == "timeout"

    def test_unexpected_error_is_unknown(self):
        provider = Mock()
        provider.generate.side_effect = KeyError("choices")
        result = LLMReplyGenerator(provider).generate(1, {"content": "oi"}, [])
        assert result.error_code == "unknown"


class TestOpenAICompatibleProvider:
    def test_missing_key(self):
        with pytest.raises(LLMError) as exc_info:
            OpenAICompatibleProvider(api_key="").generate([{"role": "user", "content": "oi"}])
        assert exc_info.value.code == "not_configured"

    @patch("kondo_agent.services.llm.openai_provider.httpx.Client")
    def test_parses_choice(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = {
            "model": "grok-3-mini",
            "choices": [{"message": {"content": "Olá!"}}],
            "usage": {"total_tokens": 12},
        }
        mock_client.post.return_value = mock_response

        provider = OpenAICompatibleProvider(api_key="key", base_url="https://api.x.ai/v1/")
        response = provider.generate([{"role": "user", "content": "oi"}])

        assert response.content == "Olá!"
        assert mock_client.post.call_args[0][0] == "https://api.x.ai/v1/chat/completions"

    @patch("kondo_agent.services.llm.openai_provider.httpx.Client")
    def test_error_status(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 500
        mock_response.text = "internal error"
        mock_client.post.return_value = mock_response

        with pytest.raises(LLMError) as exc_info:
            OpenAICompatibleProvider(api_key="key").generate([{"role": "user", "content": "oi"}])
        assert exc_info.value.code == "http_error"

    @patch("kondo_agent.services.llm.openai_provider.httpx.Client")
    def test_timeout(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(LLMError) as exc_info:
            OpenAICompatibleProvider(api_key="key").generate([{"role": "user", "content": "oi"}])
        assert exc_info.value.code == "timeout"
