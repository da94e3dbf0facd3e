"""Shared fakes for bridge, agent and handler tests."""

from typing import Any, Dict, List, Optional

import pytest

from mcpbridge.core.history import ConversationKey, HistoryStore
from mcpbridge.mcp.registry import ToolRegistry
from mcpbridge.mcp.schema import CallResult, ToolInfo
from mcpbridge.providers.base import ProviderResponse, ProviderToolCall
from mcpbridge.validation.config import BridgeConfig, Config


def make_config(**document) -> BridgeConfig:
    """A merged config built from ``document`` with no environment."""
    return Config(document, environ={}).merged


def reply(content: str = "", tool_calls: Optional[List[ProviderToolCall]] = None) -> ProviderResponse:
    return ProviderResponse(content=content, model="fake-model", provider="fake", tool_calls=tool_calls)


class FakeProvider:
    """Returns scripted responses and records every request."""

    provider_name = "fake"
    model = "fake-model"

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def chat(self, messages, tools=None, **kwargs):
        self.requests.append({"messages": [dict(m) for m in messages], "tools": tools})
        if not self.responses:
            raise AssertionError("FakeProvider ran out of scripted responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return reply(response)
        return response


class FakeClient:
    """Stands in for an MCPClient in the tool catalog."""

    def __init__(self, name: str = "fs", result: Any = "ok"):
        self.name = name
        self.result = result
        self.calls: List[Dict[str, Any]] = []

    def call_tool(self, tool_name, args=None, timeout=None, cancel=None):
        self.calls.append({"tool": tool_name, "args": dict(args or {}), "timeout": timeout})
        if isinstance(self.result, Exception):
            raise self.result
        if isinstance(self.result, CallResult):
            return self.result
        return CallResult(content=self.result)


def add_tool(registry: ToolRegistry, name: str, client: FakeClient, schema: Optional[Dict[str, Any]] = None,
             description: str = "") -> ToolInfo:
    tool = ToolInfo(
        name=name,
        server=client.name,
        description=description or f"{name} tool",
        input_schema=schema or {"type": "object", "properties": {}},
        client=client,
    )
    registry.add(tool)
    return tool


@pytest.fixture
def history():
    return HistoryStore(limit=50)


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def key():
    return ConversationKey("C1", "1700000000.000100")
