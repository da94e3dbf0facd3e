"""
mcpbridge - chat front ends for LLMs with MCP tools.

Messages arriving from Slack (Socket Mode) or a terminal are answered by an
LLM that can call tools advertised by Model Context Protocol servers.

Architecture:
- mcp/         stdio, SSE and streamable-HTTP transports, client, tool catalog
- providers/   OpenAI, Anthropic, Ollama and OpenAI-compatible LLM providers
- core/        bridge loop, agent loop, history, access control, lifecycle
- frontends/   Slack and terminal adapters plus the event handler
- validation/  configuration models and tool-argument validation
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

from mcpbridge.core.bridge import Bridge
from mcpbridge.core.lifecycle import Application, Snapshot
from mcpbridge.validation.config import BridgeConfig, Config, load_config

__all__ = [
    "Application",
    "Bridge",
    "BridgeConfig",
    "Config",
    "Snapshot",
    "load_config",
    "__version__",
]
