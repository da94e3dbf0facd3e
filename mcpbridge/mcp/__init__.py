"""
mcpbridge MCP module.

Transports, the MCP client and the client pool / tool registry.
"""

from mcpbridge.mcp.client import ClientStatus, MCPClient
from mcpbridge.mcp.factory import TransportFactory
from mcpbridge.mcp.registry import ClientPool, ToolRegistry
from mcpbridge.mcp.schema import CallResult, ServerReport, ToolCall, ToolInfo
from mcpbridge.mcp.transport import Transport, TransportKind, TransportState, TransportStatus

__all__ = [
    "CallResult",
    "ClientPool",
    "ClientStatus",
    "MCPClient",
    "ServerReport",
    "ToolCall",
    "ToolInfo",
    "ToolRegistry",
    "Transport",
    "TransportFactory",
    "TransportKind",
    "TransportState",
    "TransportStatus",
]
