"""
mcpbridge Provider Base - LLM provider abstraction.

This module defines the interface that all LLM providers implement and a
factory that builds the provider selected in the configuration.

Messages use the OpenAI chat format throughout: ``{"role", "content"}``
dicts, assistant messages may carry ``tool_calls`` and tool results use
``{"role": "tool", "tool_call_id", "content"}``. Providers with a different
wire format convert at the edge.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import httpx

from mcpbridge.core.errors import LLMError, OperationTimeout, TransportError
from mcpbridge.core.http import RetryingClient, RetryPolicy, log_request
from mcpbridge.validation.config import LLMConfig, LLMProviderConfig

logger = logging.getLogger(__name__)


@dataclass
class ProviderToolCall:
    """A native tool call requested by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_message_part(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass
class ProviderResponse:
    """Response from an LLM provider."""

    content: str
    model: str
    provider: str
    token_usage: int = 0
    finish_reason: str = "stop"
    tool_calls: List[ProviderToolCall] = None
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.content is None:
            self.content = ""
        if self.tool_calls is None:
            self.tool_calls = []
        if self.metadata is None:
            self.metadata = {}


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class Provider(ABC):
    """
    Abstract base class for LLM providers.

    Subclasses implement ``chat``; ``complete`` is the single-prompt
    convenience built on top of it.

    Example:
        >>> provider = ProviderFactory.create(config.llm)
        >>> provider.complete("hello", system_prompt="Be brief.").content
    """

    def __init__(
        self,
        model: str,
        config: LLMProviderConfig,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize the provider.

        Args:
            model: The model identifier.
            config: The provider's configuration block.
            timeout: Per-request HTTP timeout in seconds.
            policy: Retry policy for transient HTTP failures.
        """
        self.model = model
        self.config = config
        self.timeout = timeout
        self.policy = policy or RetryPolicy()

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """
        Send a chat request.

        Args:
            messages: Conversation in OpenAI chat format.
            tools: Optional function definitions for native tool calling.
            **kwargs: ``temperature`` / ``max_tokens`` overrides.

        Returns:
            ProviderResponse with the completion and any tool calls.

        Raises:
            LLMError: If the provider is unreachable or answers non-2xx.
        """
        pass

    def complete(
        self,
        prompt: str,
        conversation_history: Optional[List[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
        **kwargs,
    ) -> ProviderResponse:
        """Generate a completion for one user prompt."""
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if conversation_history:
            messages.extend(conversation_history)
        messages.append({"role": "user", "content": prompt})
        return self.chat(messages, **kwargs)

    def validate_connection(self) -> bool:
        """Whether the provider has what it needs to make requests."""
        return bool(self.get_api_key())

    def get_api_key(self) -> Optional[str]:
        return self.config.api_key or None

    def _temperature(self, kwargs: Dict[str, Any]) -> float:
        return kwargs.get("temperature", self.config.temperature)

    def _max_tokens(self, kwargs: Dict[str, Any]) -> int:
        return kwargs.get("max_tokens", self.config.max_tokens)


class OpenAIProvider(Provider):
    """OpenAI API provider implementation."""

    _sdk = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def _client(self):
        if self._sdk is not None:
            return self._sdk
        try:
            import openai
        except ImportError:
            raise ImportError("openai package required. Install with: pip install mcpbridge")

        api_key = self.get_api_key()
        if not api_key:
            raise LLMError("OpenAI API key not configured", code="missing-required-field")

        self._sdk = openai.OpenAI(
            api_key=api_key,
            base_url=self.config.base_url or None,
            timeout=self.timeout,
            max_retries=max(self.policy.max_attempts - 1, 0),
            http_client=httpx.Client(timeout=self.timeout, event_hooks={"request": [log_request]}),
        )
        return self._sdk

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """Generate completion using the OpenAI API."""
        import openai

        request: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self._temperature(kwargs),
            "max_tokens": self._max_tokens(kwargs),
        }
        if tools:
            request["tools"] = tools

        try:
            response = self._client().chat.completions.create(**request)
        except openai.APITimeoutError as exc:
            raise OperationTimeout("OpenAI request timed out", cause=exc)
        except openai.APIStatusError as exc:
            raise LLMError(f"OpenAI returned HTTP {exc.status_code}: {exc.message}", status_code=exc.status_code, cause=exc)
        except openai.APIConnectionError as exc:
            raise LLMError(f"OpenAI unreachable: {exc}", cause=exc)

        if not response.choices:
            raise LLMError("OpenAI returned no choices", code="unparseable-response")
        choice = response.choices[0]
        tool_calls = [
            ProviderToolCall(id=call.id, name=call.function.name, arguments=_parse_arguments(call.function.arguments))
            for call in (choice.message.tool_calls or [])
        ]
        return ProviderResponse(
            content=choice.message.content or "",
            model=response.model,
            provider=self.provider_name,
            token_usage=response.usage.total_tokens if response.usage else 0,
            finish_reason=choice.finish_reason or "stop",
            tool_calls=tool_calls,
        )


class AnthropicProvider(Provider):
    """Anthropic API provider implementation."""

    _sdk = None

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _client(self):
        if self._sdk is not None:
            return self._sdk
        try:
            import anthropic
        except ImportError:
            raise ImportError("anthropic package required. Install with: pip install mcpbridge")

        api_key = self.get_api_key()
        if not api_key:
            raise LLMError("Anthropic API key not configured", code="missing-required-field")

        options: Dict[str, Any] = {
            "api_key": api_key,
            "timeout": self.timeout,
            "max_retries": max(self.policy.max_attempts - 1, 0),
            "http_client": httpx.Client(timeout=self.timeout, event_hooks={"request": [log_request]}),
        }
        if self.config.base_url:
            options["base_url"] = self.config.base_url
        self._sdk = anthropic.Anthropic(**options)
        return self._sdk

    @staticmethod
    def convert_messages(messages: List[Dict[str, Any]]) -> tuple:
        """Split OpenAI-format messages into (system, anthropic messages)."""
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            if role == "system":
                system_parts.append(message.get("content") or "")
            elif role == "tool":
                converted.append({
                    "role": "user",
                    "content": [{
                        "type": "tool_result",
                        "tool_use_id": message.get("tool_call_id", ""),
                        "content": message.get("content") or "",
                    }],
                })
            elif role == "assistant" and message.get("tool_calls"):
                blocks: List[Dict[str, Any]] = []
                if message.get("content"):
                    blocks.append({"type": "text", "text": message["content"]})
                for call in message["tool_calls"]:
                    blocks.append({
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["function"]["name"],
                        "input": _parse_arguments(call["function"].get("arguments")),
                    })
                converted.append({"role": "assistant", "content": blocks})
            else:
                converted.append({"role": role, "content": message.get("content") or ""})
        return "\n\n".join(p for p in system_parts if p), converted

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """Generate completion using the Anthropic API."""
        import anthropic

        system, converted = self.convert_messages(messages)
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": converted,
            "max_tokens": self._max_tokens(kwargs),
            "temperature": self._temperature(kwargs),
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = [
                {
                    "name": t["function"]["name"],
                    "description": t["function"].get("description", ""),
                    "input_schema": t["function"].get("parameters") or {"type": "object"},
                }
                for t in tools
            ]

        try:
            response = self._client().messages.create(**request)
        except anthropic.APITimeoutError as exc:
            raise OperationTimeout("Anthropic request timed out", cause=exc)
        except anthropic.APIStatusError as exc:
            raise LLMError(f"Anthropic returned HTTP {exc.status_code}: {exc.message}", status_code=exc.status_code, cause=exc)
        except anthropic.APIConnectionError as exc:
            raise LLMError(f"Anthropic unreachable: {exc}", cause=exc)

        text = "".join(block.text for block in response.content if block.type == "text")
        tool_calls = [
            ProviderToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
            for block in response.content
            if block.type == "tool_use"
        ]
        return ProviderResponse(
            content=text,
            model=response.model,
            provider=self.provider_name,
            token_usage=response.usage.input_tokens + response.usage.output_tokens,
            finish_reason=response.stop_reason or "stop",
            tool_calls=tool_calls,
        )


class _HTTPProvider(Provider):
    """Shared plumbing for providers spoken to directly over httpx."""

    def __init__(self, *args, transport: Optional[httpx.BaseTransport] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._http = RetryingClient(timeout=self.timeout, policy=self.policy, transport=transport)

    def _post(self, url: str, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        try:
            response = self._http.post(url, json=body, headers=headers)
        except TransportError as exc:
            if isinstance(exc.cause, httpx.TimeoutException):
                raise OperationTimeout(f"{self.provider_name} request timed out", cause=exc)
            raise LLMError(f"{self.provider_name} unreachable: {exc.message}", cause=exc)
        if response.status_code >= 400:
            raise LLMError(
                f"{self.provider_name} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise LLMError(f"{self.provider_name} returned a non-JSON body", code="unparseable-response", cause=exc)


class OllamaProvider(_HTTPProvider):
    """Ollama local provider implementation."""

    @property
    def provider_name(self) -> str:
        return "ollama"

    def validate_connection(self) -> bool:
        """Validate Ollama connection."""
        try:
            response = httpx.get(f"{self._base_url()}/api/tags", timeout=5)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _base_url(self) -> str:
        return (self.config.base_url or "http://localhost:11434").rstrip("/")

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """Generate completion using Ollama."""
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [self._to_ollama(m) for m in messages],
            "stream": False,
            "options": {
                "temperature": self._temperature(kwargs),
                "num_predict": self._max_tokens(kwargs),
            },
        }
        if tools:
            body["tools"] = tools

        data = self._post(f"{self._base_url()}/api/chat", body)
        message = data.get("message")
        if not isinstance(message, dict):
            raise LLMError("Ollama response has no message", code="unparseable-response")
        tool_calls = [
            ProviderToolCall(
                id=f"call_{i}",
                name=call.get("function", {}).get("name", ""),
                arguments=_parse_arguments(call.get("function", {}).get("arguments")),
            )
            for i, call in enumerate(message.get("tool_calls") or [])
        ]
        return ProviderResponse(
            content=message.get("content") or "",
            model=data.get("model", self.model),
            provider=self.provider_name,
            token_usage=data.get("prompt_eval_count", 0) + data.get("eval_count", 0),
            finish_reason=data.get("done_reason", "stop"),
            tool_calls=tool_calls,
        )

    @staticmethod
    def _to_ollama(message: Dict[str, Any]) -> Dict[str, Any]:
        converted = {"role": message["role"], "content": message.get("content") or ""}
        if message.get("tool_calls"):
            converted["tool_calls"] = [
                {"function": {"name": c["function"]["name"], "arguments": _parse_arguments(c["function"].get("arguments"))}}
                for c in message["tool_calls"]
            ]
        return converted


class OpenAICompatibleProvider(_HTTPProvider):
    """
    Base for providers that expose an OpenAI-compatible chat completions API.

    Subclasses only need to set _base_url, _env_key, and provider_name. The
    configured ``baseUrl`` overrides the class default.
    """

    _base_url: str = ""
    _env_key: str = ""

    @property
    def provider_name(self) -> str:
        return "openai-compatible"

    def get_api_key(self) -> Optional[str]:
        return self.config.api_key or (os.environ.get(self._env_key) if self._env_key else None)

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> ProviderResponse:
        base_url = (self.config.base_url or self._base_url).rstrip("/")
        if not base_url:
            raise LLMError(f"{self.provider_name} base URL not configured", code="missing-required-field")

        headers = {"Content-Type": "application/json"}
        api_key = self.get_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        body: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self._temperature(kwargs),
            "max_tokens": self._max_tokens(kwargs),
        }
        if tools:
            body["tools"] = tools

        data = self._post(f"{base_url}/chat/completions", body, headers=headers)
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0].get("message"), dict):
            raise LLMError(f"{self.provider_name} returned no choices", code="unparseable-response")
        choice = choices[0]
        message = choice["message"]
        usage = data.get("usage") or {}
        tool_calls = [
            ProviderToolCall(
                id=call.get("id", f"call_{i}"),
                name=call.get("function", {}).get("name", ""),
                arguments=_parse_arguments(call.get("function", {}).get("arguments")),
            )
            for i, call in enumerate(message.get("tool_calls") or [])
        ]
        return ProviderResponse(
            content=message.get("content") or "",
            model=data.get("model", self.model),
            provider=self.provider_name,
            token_usage=usage.get("total_tokens", 0),
            finish_reason=choice.get("finish_reason") or "stop",
            tool_calls=tool_calls,
        )


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter - unified API for 100+ open and commercial models."""

    _base_url = "https://openrouter.ai/api/v1"
    _env_key = "OPENROUTER_API_KEY"

    @property
    def provider_name(self) -> str:
        return "openrouter"


class GroqProvider(OpenAICompatibleProvider):
    """Groq - fast inference for open models."""

    _base_url = "https://api.groq.com/openai/v1"
    _env_key = "GROQ_API_KEY"

    @property
    def provider_name(self) -> str:
        return "groq"


class ProviderFactory:
    """Factory for creating provider instances."""

    _providers: Dict[str, Type[Provider]] = {
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "ollama": OllamaProvider,
        "openai-compatible": OpenAICompatibleProvider,
        "openrouter": OpenRouterProvider,
        "groq": GroqProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: Type[Provider]) -> None:
        """Register a new provider."""
        cls._providers[name] = provider_class

    @classmethod
    def create(
        cls,
        llm: LLMConfig,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
    ) -> Provider:
        """
        Create the provider selected by ``llm.provider``.

        Args:
            llm: The LLM configuration section.
            timeout: Per-request HTTP timeout in seconds.
            policy: Retry policy for transient HTTP failures.

        Returns:
            Provider instance.

        Raises:
            LLMError: If the provider is not recognized or not configured.
        """
        provider_class = cls._providers.get(llm.provider)
        if provider_class is None:
            raise LLMError(f"Unknown provider: {llm.provider}", code="invalid-config")
        block = llm.active
        if block is None:
            raise LLMError(f"LLM provider '{llm.provider}' not configured", code="invalid-config")
        logger.info("Using LLM provider %s (model %s)", llm.provider, block.model)
        return provider_class(model=block.model, config=block, timeout=timeout, policy=policy)

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider names."""
        return list(cls._providers.keys())
