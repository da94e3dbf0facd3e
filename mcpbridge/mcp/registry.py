"""Client pool and tool registry - start MCP servers and build the tool catalog."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from mcp.types import Tool

from mcpbridge.core.errors import BridgeError, ClientCreationError
from mcpbridge.core.http import RetryPolicy
from mcpbridge.mcp.client import MCPClient
from mcpbridge.mcp.factory import TransportFactory
from mcpbridge.mcp.schema import ServerReport, ToolInfo
from mcpbridge.validation.config import BridgeConfig, ToolFilterConfig

logger = logging.getLogger(__name__)

LIST_TOOLS_TIMEOUT = 20.0


class ToolRegistry:
    """
    Process-wide catalog mapping tool names to their owning client.

    The first server to advertise a name keeps it; later duplicates are
    logged and dropped. Writers replace the internal mapping wholesale, so
    readers always see a consistent snapshot.
    """

    def __init__(self):
        self._tools: Dict[str, ToolInfo] = {}
        self._lock = threading.Lock()

    def add(self, tool: ToolInfo) -> Optional[ToolInfo]:
        """Add ``tool``. Returns the existing entry if the name is taken."""
        with self._lock:
            existing = self._tools.get(tool.name)
            if existing is not None and existing.server != tool.server:
                logger.warning(
                    "Tool name conflict: '%s' from server '%s' ignored, already provided by '%s'",
                    tool.name, tool.server, existing.server,
                )
                return existing
            if existing is not None:
                return existing
            tools = dict(self._tools)
            tools[tool.name] = tool
            self._tools = tools
        return None

    def refresh_server(self, server: str, tools: List[ToolInfo]) -> None:
        """Replace the entries owned by ``server`` with fresh ToolInfo objects.

        Names owned by other servers stay with them; order is preserved.
        """
        fresh = {tool.name: tool for tool in tools}
        with self._lock:
            updated: Dict[str, ToolInfo] = {}
            for name, current in self._tools.items():
                if current.server != server:
                    updated[name] = current
                elif name in fresh:
                    updated[name] = fresh.pop(name)
            for name, tool in fresh.items():
                if name not in updated:
                    updated[name] = tool
            self._tools = updated

    def get(self, name: str) -> Optional[ToolInfo]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolInfo]:
        return iter(list(self._tools.values()))

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def for_server(self, server: str) -> List[ToolInfo]:
        return [tool for tool in self._tools.values() if tool.server == server]


def tool_infos(server: str, client: Any, tools: List[Tool], filters: Optional[ToolFilterConfig] = None) -> List[ToolInfo]:
    """Convert discovered tools to ToolInfo, applying allow/block lists."""
    result = []
    for tool in tools:
        if filters is not None and not filters.permits(tool.name):
            logger.info("Tool '%s' from '%s' filtered out by allow/block list", tool.name, server)
            continue
        result.append(
            ToolInfo(
                name=tool.name,
                server=server,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
                client=client,
            )
        )
    return result


class ClientPool:
    """
    Starts one MCP client per configured server and owns their lifetimes.

    Servers are started sequentially: each is initialized and asked for its
    tools before the next one starts. A failure marks only that server as
    failed; the rest still start.

    Example:
        >>> pool = ClientPool(config)
        >>> registry = pool.start()
        >>> for report in pool.reports.values():
        ...     print(report.name, report.summary)
    """

    def __init__(
        self,
        config: BridgeConfig,
        transport_factory: Callable[..., Any] = TransportFactory.create,
        client_factory: Callable[..., MCPClient] = MCPClient,
    ):
        self.config = config
        self._transport_factory = transport_factory
        self._client_factory = client_factory
        self.clients: Dict[str, MCPClient] = {}
        self.reports: Dict[str, ServerReport] = {}
        self.registry = ToolRegistry()

    def start(self) -> ToolRegistry:
        """Start every enabled server and return the populated registry."""
        for name, server in self.config.mcp_servers.items():
            report = ServerReport(name=name, transport=server.transport or "")
            self.reports[name] = report
            if server.disabled:
                report.status = "disabled"
                logger.info("MCP server '%s' is disabled, skipping", name)
                continue
            self._start_server(name, report)

        failed = [r for r in self.reports.values() if r.status == "failed"]
        logger.info(
            "MCP startup complete: %d tools from %d servers, %d failed",
            len(self.registry),
            len([r for r in self.reports.values() if r.status == "ready"]),
            len(failed),
        )
        for report in failed:
            logger.error("MCP server '%s' %s", report.name, report.summary)
        return self.registry

    def _start_server(self, name: str, report: ServerReport) -> None:
        server = self.config.mcp_servers[name]
        stage = "create"
        client: Optional[MCPClient] = None
        try:
            transport = self._transport_factory(
                name,
                server,
                http_timeout=self.config.timeouts.http_request_timeout,
                policy=RetryPolicy.from_config(self.config.retry),
            )
            client = self._client_factory(name, transport)

            stage = "initialize"
            client.initialize(timeout=self.config.init_timeout_for(server))

            stage = "list-tools"
            tools = client.list_tools(timeout=LIST_TOOLS_TIMEOUT)
        except (BridgeError, OSError) as exc:
            if isinstance(exc, BridgeError) and stage == "create" and not isinstance(exc, ClientCreationError):
                exc = ClientCreationError(str(exc), cause=exc)
            report.status = "failed"
            report.stage = stage
            report.error = exc.message if isinstance(exc, BridgeError) else str(exc)
            logger.error("MCP server '%s' failed during %s: %s", name, stage, report.error)
            if client is not None:
                client.close()
            return

        self.clients[name] = client
        for info in tool_infos(name, client, tools, server.tools):
            existing = self.registry.add(info)
            if existing is None:
                report.tools.append(info.name)
            elif existing.server != name:
                report.conflicts.append(info.name)
        report.status = "ready"

        transport = client.transport
        if transport.supports_reconnect:
            transport.on_reconnected = lambda: self._refresh_async(name)

    def _refresh_async(self, name: str) -> None:
        threading.Thread(target=self.refresh_server, args=(name,), name=f"mcp-{name}-refresh", daemon=True).start()

    def refresh_server(self, name: str) -> None:
        """Re-list a server's tools and refresh its catalog entries."""
        client = self.clients.get(name)
        if client is None:
            return
        try:
            tools = client.list_tools(timeout=LIST_TOOLS_TIMEOUT)
        except BridgeError as exc:
            logger.warning("Could not refresh tools for '%s': %s", name, exc)
            return
        server = self.config.mcp_servers[name]
        self.registry.refresh_server(name, tool_infos(name, client, tools, server.tools))

    def close(self) -> None:
        """Close every client."""
        for name, client in list(self.clients.items()):
            try:
                client.close()
            except (BridgeError, OSError) as exc:
                logger.warning("Error closing MCP client '%s': %s", name, exc)
        self.clients.clear()
