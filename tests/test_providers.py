"""Tests for LLM providers."""

import json

import httpx
import pytest

from mcpbridge.core.errors import LLMError, OperationTimeout
from mcpbridge.core.http import RetryPolicy
from mcpbridge.providers.base import (
    AnthropicProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    ProviderFactory,
    ProviderResponse,
)
from mcpbridge.validation.config import LLMConfig, LLMProviderConfig

TOOLS = [{
    "type": "function",
    "function": {"name": "search", "description": "Search", "parameters": {"type": "object"}},
}]


def recording(response):
    """MockTransport handler that records request bodies."""
    seen = []

    def handler(request):
        seen.append({"url": str(request.url), "body": json.loads(request.content), "headers": request.headers})
        if isinstance(response, Exception):
            raise response
        return response

    handler.seen = seen
    return handler


class TestProviderFactory:
    """Tests for ProviderFactory."""

    def test_create_selected_provider(self):
        """Test the active provider block is used."""
        llm = LLMConfig(provider="ollama")
        provider = ProviderFactory.create(llm, timeout=12, policy=RetryPolicy(max_attempts=1))

        assert isinstance(provider, OllamaProvider)
        assert provider.model == "llama3"
        assert provider.timeout == 12

    def test_unknown_provider(self):
        """Test unknown names raise LLMError."""
        with pytest.raises(LLMError, match="Unknown provider"):
            ProviderFactory.create(LLMConfig(provider="mystery"))

    def test_available_providers(self):
        """Test the built-in providers are registered."""
        assert {"openai", "anthropic", "ollama"} <= set(ProviderFactory.available_providers())

    def test_openai_types(self):
        """Test the SDK-backed providers are selected by name."""
        assert isinstance(ProviderFactory.create(LLMConfig(provider="openai")), OpenAIProvider)
        assert isinstance(ProviderFactory.create(LLMConfig(provider="anthropic")), AnthropicProvider)


class TestProviderResponse:
    """Tests for ProviderResponse defaults."""

    def test_none_fields_normalized(self):
        """Test None content and lists become empty values."""
        response = ProviderResponse(content=None, model="m", provider="p")
        assert response.content == ""
        assert response.tool_calls == []
        assert response.metadata == {}


class TestOllamaProvider:
    """Tests for OllamaProvider over httpx.MockTransport."""

    def make(self, handler, **config):
        block = LLMProviderConfig(model="llama3", base_url="http://ollama:11434", **config)
        return OllamaProvider(
            model="llama3",
            config=block,
            policy=RetryPolicy(max_attempts=1),
            transport=httpx.MockTransport(handler),
        )

    def test_chat(self):
        """Test request shape and response parsing."""
        handler = recording(httpx.Response(200, json={
            "model": "llama3",
            "message": {"role": "assistant", "content": "hi"},
            "prompt_eval_count": 5,
            "eval_count": 7,
        }))
        provider = self.make(handler, max_tokens=64)

        response = provider.chat([{"role": "user", "content": "hello"}])

        assert response.content == "hi"
        assert response.token_usage == 12
        body = handler.seen[0]["body"]
        assert handler.seen[0]["url"] == "http://ollama:11434/api/chat"
        assert body["stream"] is False
        assert body["options"] == {"temperature": 0.7, "num_predict": 64}

    def test_tool_calls(self):
        """Test native tool calls are parsed."""
        handler = recording(httpx.Response(200, json={
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "search", "arguments": {"q": "x"}}}],
            },
        }))
        response = self.make(handler).chat([{"role": "user", "content": "find x"}], tools=TOOLS)

        assert response.tool_calls[0].name == "search"
        assert response.tool_calls[0].arguments == {"q": "x"}
        assert handler.seen[0]["body"]["tools"] == TOOLS

    def test_http_error(self):
        """Test non-2xx responses carry the status code."""
        provider = self.make(recording(httpx.Response(500, text="boom")))
        with pytest.raises(LLMError) as exc_info:
            provider.chat([{"role": "user", "content": "x"}])
        assert exc_info.value.status_code == 500

    def test_timeout(self):
        """Test read timeouts become OperationTimeout."""
        request = httpx.Request("POST", "http://ollama:11434/api/chat")
        provider = self.make(recording(httpx.ReadTimeout("slow", request=request)))
        with pytest.raises(OperationTimeout):
            provider.chat([{"role": "user", "content": "x"}])


class TestOpenAICompatibleProvider:
    """Tests for OpenAI-compatible HTTP providers."""

    def test_chat_with_tools(self):
        """Test the request carries auth and tools, and tool calls are parsed."""
        handler = recording(httpx.Response(200, json={
            "model": "local-model",
            "choices": [{
                "finish_reason": "tool_calls",
                "message": {
                    "content": None,
                    "tool_calls": [{
                        "id": "call_9",
                        "type": "function",
                        "function": {"name": "search", "arguments": "{\"q\": \"y\"}"},
                    }],
                },
            }],
            "usage": {"total_tokens": 30},
        }))
        block = LLMProviderConfig(model="local-model", api_key="sk-local", base_url="http://llm.local/v1/")
        provider = OpenAICompatibleProvider(
            model="local-model", config=block, policy=RetryPolicy(max_attempts=1),
            transport=httpx.MockTransport(handler),
        )

        response = provider.chat([{"role": "user", "content": "find y"}], tools=TOOLS)

        assert handler.seen[0]["url"] == "http://llm.local/v1/chat/completions"
        assert handler.seen[0]["headers"]["authorization"] == "Bearer sk-local"
        assert response.content == ""
        assert response.tool_calls[0].id == "call_9"
        assert response.tool_calls[0].arguments == {"q": "y"}
        assert response.token_usage == 30

    def test_default_sampling_options_sent(self):
        """Test temperature and max_tokens defaults are in every request body."""
        handler = recording(httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))
        llm = LLMConfig(provider="openai-compatible", providers={
            "openai-compatible": {"model": "local-model", "baseUrl": "http://llm.local/v1"},
        })
        provider = OpenAICompatibleProvider(
            model="local-model", config=llm.active, policy=RetryPolicy(max_attempts=1),
            transport=httpx.MockTransport(handler),
        )

        provider.chat([{"role": "user", "content": "hi"}])

        body = handler.seen[0]["body"]
        assert body["temperature"] == 0.7
        assert body["max_tokens"] == 2048

    def test_missing_base_url(self):
        """Test the generic provider needs a base URL."""
        provider = OpenAICompatibleProvider(model="m", config=LLMProviderConfig(model="m"))
        with pytest.raises(LLMError, match="base URL"):
            provider.chat([{"role": "user", "content": "x"}])


class TestAnthropicConversion:
    """Tests for AnthropicProvider.convert_messages."""

    def test_convert_messages(self):
        """Test system, tool-call and tool-result messages are translated."""
        system, messages = AnthropicProvider.convert_messages([
            {"role": "system", "content": "Be brief."},
            {"role": "system", "content": "Previous conversation: ..."},
            {"role": "user", "content": "find x"},
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"id": "t1", "type": "function",
                                "function": {"name": "search", "arguments": "{\"q\": \"x\"}"}}],
            },
            {"role": "tool", "tool_call_id": "t1", "content": "found"},
        ])

        assert system == "Be brief.\n\nPrevious conversation: ..."
        assert messages[0] == {"role": "user", "content": "find x"}
        assert messages[1] == {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": "t1", "name": "search", "input": {"q": "x"}}],
        }
        assert messages[2]["content"][0] == {"type": "tool_result", "tool_use_id": "t1", "content": "found"}
