"""
mcpbridge core module.

Errors, conversation history and the bridge between LLM and MCP tools.
Import the bridge, agent and lifecycle from their own modules.
"""

from mcpbridge.core.errors import BridgeError, user_message
from mcpbridge.core.history import ConversationKey, HistoryStore, Message

__all__ = ["BridgeError", "ConversationKey", "HistoryStore", "Message", "user_message"]
