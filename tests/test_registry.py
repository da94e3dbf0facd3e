"""Tests for the tool registry and client pool."""

import logging

from conftest import make_config
from mcp.types import Tool

from mcpbridge.core.errors import ClientCreationError, InitializationError, ToolDiscoveryError
from mcpbridge.mcp.registry import ClientPool, ToolRegistry, tool_infos
from mcpbridge.mcp.schema import ToolInfo
from mcpbridge.validation.config import ToolFilterConfig


def tool(name):
    return Tool(name=name, description=f"{name} tool", inputSchema={"type": "object", "properties": {}})


class StubTransport:
    def __init__(self, reconnect=False):
        self.supports_reconnect = reconnect
        self.on_reconnected = None


class StubClient:
    """Scriptable MCPClient stand-in."""

    def __init__(self, name, tools=(), fail_stage=None, reconnect=False):
        self.name = name
        self.tools = list(tools)
        self.fail_stage = fail_stage
        self.transport = StubTransport(reconnect)
        self.closed = False

    def initialize(self, timeout=None):
        if self.fail_stage == "initialize":
            raise InitializationError("handshake refused", data={"reason": "error"})

    def list_tools(self, timeout=None):
        if self.fail_stage == "list-tools":
            raise ToolDiscoveryError("tools/list failed")
        return list(self.tools)

    def close(self):
        self.closed = True


def pool_for(servers, clients, broken=()):
    config = make_config(mcpServers=servers)

    def transport_factory(name, server, **options):
        if name in broken:
            raise ClientCreationError(f"cannot build transport for {name}")
        return object()

    def client_factory(name, transport):
        return clients[name]

    return ClientPool(config, transport_factory=transport_factory, client_factory=client_factory)


class TestToolRegistry:
    """Tests for ToolRegistry."""

    def test_first_server_wins(self, caplog):
        """Test name conflicts keep the first registration and log the collision."""
        registry = ToolRegistry()
        first = ToolInfo(name="search", server="s1")
        with caplog.at_level(logging.WARNING):
            assert registry.add(first) is None
            assert registry.add(ToolInfo(name="search", server="s2")) is first

        assert registry.get("search").server == "s1"
        assert "Tool name conflict: 'search'" in caplog.text

    def test_refresh_server(self):
        """Test a refresh replaces only the owning server's entries."""
        registry = ToolRegistry()
        registry.add(ToolInfo(name="a", server="s1", description="old"))
        registry.add(ToolInfo(name="b", server="s2"))
        registry.add(ToolInfo(name="c", server="s1"))

        registry.refresh_server("s1", [
            ToolInfo(name="a", server="s1", description="new"),
            ToolInfo(name="b", server="s1"),
            ToolInfo(name="d", server="s1"),
        ])

        assert registry.names() == ["a", "b", "d"]
        assert registry.get("a").description == "new"
        assert registry.get("b").server == "s2"
        assert "c" not in registry

    def test_tool_infos_filters(self):
        """Test allow and block lists."""
        tools = [tool("read"), tool("write"), tool("delete")]

        allowed = tool_infos("fs", None, tools, ToolFilterConfig(allow_list=["read", "delete"], block_list=["delete"]))
        assert [t.name for t in allowed] == ["read"]
        assert [t.name for t in tool_infos("fs", None, tools)] == ["read", "write", "delete"]


class TestClientPool:
    """Tests for ClientPool startup."""

    def test_conflict_routes_to_first_server(self):
        """Test two servers advertising the same tool."""
        clients = {
            "s1": StubClient("s1", [tool("search")]),
            "s2": StubClient("s2", [tool("search"), tool("fetch")]),
        }
        pool = pool_for({"s1": {"command": "a"}, "s2": {"command": "b"}}, clients)

        registry = pool.start()

        assert registry.get("search").client is clients["s1"]
        assert registry.get("fetch").server == "s2"
        assert pool.reports["s1"].tools == ["search"]
        assert pool.reports["s2"].tools == ["fetch"]
        assert pool.reports["s2"].conflicts == ["search"]

    def test_failures_are_isolated(self):
        """Test each failing stage is reported and other servers still start."""
        clients = {
            "bad_init": StubClient("bad_init", fail_stage="initialize"),
            "bad_list": StubClient("bad_list", fail_stage="list-tools"),
            "good": StubClient("good", [tool("ok")]),
        }
        servers = {
            "broken": {"command": "x"},
            "bad_init": {"command": "x"},
            "bad_list": {"command": "x"},
            "good": {"command": "x"},
            "off": {"command": "x", "disabled": True},
        }
        pool = pool_for(servers, clients, broken=("broken",))

        registry = pool.start()

        assert registry.names() == ["ok"]
        assert pool.reports["broken"].summary == "failed(create: cannot build transport for broken)"
        assert pool.reports["bad_init"].stage == "initialize"
        assert pool.reports["bad_list"].stage == "list-tools"
        assert pool.reports["off"].status == "disabled"
        assert pool.reports["good"].status == "ready"
        assert clients["bad_init"].closed and clients["bad_list"].closed
        assert set(pool.clients) == {"good"}

    def test_server_filters_applied(self):
        """Test per-server tool filters."""
        clients = {"fs": StubClient("fs", [tool("read"), tool("write")])}
        pool = pool_for({"fs": {"command": "x", "tools": {"blockList": ["write"]}}}, clients)

        assert pool.start().names() == ["read"]

    def test_refresh_after_reconnect(self):
        """Test reconnecting transports get a refresh hook."""
        client = StubClient("remote", [tool("a")], reconnect=True)
        pool = pool_for({"remote": {"url": "http://remote/sse"}}, {"remote": client})
        registry = pool.start()
        assert client.transport.on_reconnected is not None

        client.tools = [tool("a"), tool("b")]
        pool.refresh_server("remote")

        assert registry.names() == ["a", "b"]

    def test_close(self):
        """Test close closes every started client."""
        clients = {"a": StubClient("a"), "b": StubClient("b")}
        pool = pool_for({"a": {"command": "x"}, "b": {"command": "y"}}, clients)
        pool.start()

        pool.close()

        assert clients["a"].closed and clients["b"].closed
        assert pool.clients == {}
