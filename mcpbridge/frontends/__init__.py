"""
mcpbridge frontends module.

Chat front ends and the handler that connects them to the bridge.
"""

from mcpbridge.frontends.base import ChatEvent, EventKind, UserFrontend, UserProfile
from mcpbridge.frontends.handler import ChatHandler
from mcpbridge.frontends.terminal import TerminalFrontend

__all__ = ["ChatEvent", "ChatHandler", "EventKind", "TerminalFrontend", "UserFrontend", "UserProfile"]
