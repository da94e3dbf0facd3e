"""MCP client - handshake, tool discovery and tool calls over one transport."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from mcp.types import LATEST_PROTOCOL_VERSION, CallToolResult, InitializeResult, ListToolsResult, TextContent, Tool
from pydantic import ValidationError

from mcpbridge import __version__
from mcpbridge.core.errors import (
    BridgeError,
    InitializationError,
    ProtocolError,
    ToolCallError,
    ToolDiscoveryError,
    TransportClosedError,
    TransportError,
    is_timeout,
)
from mcpbridge.mcp.schema import CallResult
from mcpbridge.mcp.transport import Transport

logger = logging.getLogger(__name__)

CLIENT_INFO = {"name": "mcpbridge", "version": __version__}


class ClientStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CALLING = "calling"
    CLOSED = "closed"


class MCPClient:
    """
    One MCP server session.

    Lifecycle: ``uninitialized -> initializing -> ready <-> calling -> closed``.
    ``calling`` is reported while at least one tool call is in flight.

    Example:
        >>> client = MCPClient("fs", transport)
        >>> client.initialize(timeout=30)
        >>> tools = client.list_tools(timeout=20)
        >>> client.call_tool("filesystem_list", {"path": "/tmp"}, timeout=180)
    """

    def __init__(self, name: str, transport: Transport):
        self.name = name
        self.transport = transport
        self.server_info: Optional[InitializeResult] = None
        self._status = ClientStatus.UNINITIALIZED
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def status(self) -> ClientStatus:
        with self._lock:
            if self._status == ClientStatus.READY and self._in_flight:
                return ClientStatus.CALLING
            return self._status

    # ── Handshake ─────────────────────────────────────────────────────────

    def _handshake(
        self,
        send: Callable[..., Dict[str, Any]],
        notify: Callable[..., None],
        timeout: Optional[float] = None,
    ) -> InitializeResult:
        raw = send(
            "initialize",
            {
                "protocolVersion": LATEST_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
            timeout,
        )
        try:
            result = InitializeResult.model_validate(raw)
        except ValidationError as exc:
            raise ProtocolError(f"invalid initialize result from '{self.name}': {exc}", cause=exc)
        notify("notifications/initialized")
        self.server_info = result
        return result

    def initialize(self, timeout: Optional[float] = 30.0) -> InitializeResult:
        """
        Open the transport and perform the MCP handshake.

        Args:
            timeout: Seconds allowed for the handshake.

        Returns:
            The server's InitializeResult.

        Raises:
            InitializationError: ``data["reason"]`` distinguishes a timeout
                from a child process that exited early.
        """
        with self._lock:
            if self._status == ClientStatus.READY:
                return self.server_info
            if self._status == ClientStatus.CLOSED:
                raise InitializationError(f"client '{self.name}' is closed")
            self._status = ClientStatus.INITIALIZING

        logger.info("Initializing MCP client '%s' (%s)", self.name, self.transport.kind.value)
        try:
            self.transport.open(timeout)
            result = self._handshake(
                lambda method, params=None, t=None: self.transport.request(method, params, t),
                self.transport.notify,
                timeout,
            )
        except BridgeError as exc:
            with self._lock:
                self._status = ClientStatus.UNINITIALIZED
            raise InitializationError(
                f"initialize failed for '{self.name}': {exc.message}",
                data={"reason": self._failure_reason(exc)},
                cause=exc,
            )

        self.transport.handshake = lambda send, notify: self._handshake(send, notify)
        with self._lock:
            self._status = ClientStatus.READY
        server = result.serverInfo
        logger.info(
            "MCP client '%s' ready (server %s %s, protocol %s)",
            self.name, server.name, server.version, result.protocolVersion,
        )
        return result

    def _failure_reason(self, exc: BaseException) -> str:
        if is_timeout(exc):
            return "context-deadline-exceeded"
        if isinstance(exc, TransportClosedError) or getattr(self.transport, "exited", False):
            return "process-exited"
        return "error"

    # ── Tools ─────────────────────────────────────────────────────────────

    def list_tools(self, timeout: Optional[float] = 20.0) -> List[Tool]:
        """Return the server's tool definitions."""
        self._require_ready(ToolDiscoveryError)
        try:
            raw = self.transport.request("tools/list", {}, timeout)
            result = ListToolsResult.model_validate(raw)
        except ValidationError as exc:
            raise ToolDiscoveryError(f"invalid tools/list result from '{self.name}': {exc}", cause=exc)
        except BridgeError as exc:
            raise ToolDiscoveryError(f"tools/list failed for '{self.name}': {exc.message}", cause=exc)
        logger.info("Discovered %d tools on '%s'", len(result.tools), self.name)
        return list(result.tools)

    def call_tool(
        self,
        tool_name: str,
        args: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = 180.0,
        cancel: Optional[threading.Event] = None,
    ) -> CallResult:
        """
        Invoke a tool and concatenate the text parts of its result.

        On SSE transports a transport error triggers one reconnect and one
        retry of the call; any further failure is raised.

        Raises:
            ToolCallError: If the call failed.
        """
        self._require_ready(ToolCallError)
        with self._lock:
            self._in_flight += 1
        try:
            try:
                raw = self._call(tool_name, args, timeout, cancel)
            except TransportError as exc:
                if not self.transport.supports_reconnect or self.transport.is_closed:
                    raise
                logger.warning("Tool call %s on '%s' hit a transport error, reconnecting: %s", tool_name, self.name, exc)
                if not self.transport.reconnect():
                    raise
                raw = self._call(tool_name, args, timeout, cancel)
        except BridgeError as exc:
            logger.error("Tool call %s on '%s' failed: %s", tool_name, self.name, exc)
            raise ToolCallError(
                f"Failed to call tool '{tool_name}': {exc.message}",
                data={"tool": tool_name, "server": self.name},
                cause=exc,
            )
        finally:
            with self._lock:
                self._in_flight -= 1

        try:
            result = CallToolResult.model_validate(raw)
        except ValidationError as exc:
            raise ToolCallError(f"invalid tools/call result from '{self.name}': {exc}", cause=exc)
        text = "".join(part.text for part in result.content if isinstance(part, TextContent))
        if result.isError:
            logger.error("Tool %s on '%s' reported an error: %s", tool_name, self.name, text)
        else:
            logger.info("Tool call %s on '%s' succeeded", tool_name, self.name)
        return CallResult(content=text, is_error=bool(result.isError))

    def _call(
        self,
        tool_name: str,
        args: Optional[Dict[str, Any]],
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> Dict[str, Any]:
        return self.transport.request(
            "tools/call",
            {"name": tool_name, "arguments": args or {}},
            timeout,
            cancel,
        )

    def _require_ready(self, error_cls: type) -> None:
        status = self.status
        if status not in (ClientStatus.READY, ClientStatus.CALLING):
            raise error_cls(f"client '{self.name}' is {status.value}")

    # ── Cleanup ───────────────────────────────────────────────────────────

    def close(self) -> None:
        """Release the transport. Idempotent."""
        with self._lock:
            if self._status == ClientStatus.CLOSED:
                return
            self._status = ClientStatus.CLOSED
        self.transport.close()
        logger.info("Closed MCP client '%s'", self.name)
