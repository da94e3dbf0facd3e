"""Tests for the SSE transport and its reconnect loop."""

import json
import queue
import threading

import httpx
import pytest

from mcpbridge.mcp.client import MCPClient
from mcpbridge.mcp.sse import SSETransport
from mcpbridge.mcp.transport import TransportStatus

INIT_RESULT = {
    "protocolVersion": "2024-11-05",
    "capabilities": {"tools": {}},
    "serverInfo": {"name": "fake-sse", "version": "1.0"},
}


class FakeSSEServer:
    """
    In-process MCP SSE server behind httpx.MockTransport.

    Each GET opens a new event stream with its own outbox; POSTed requests
    are answered on the most recent stream.
    """

    def __init__(self):
        self.connections = 0
        self.fail_posts = 0
        self.calls = []
        self._outbox = None
        self._stopped = threading.Event()

    def client(self):
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def stop(self):
        self._stopped.set()

    def handler(self, request):
        if request.method == "GET":
            self.connections += 1
            self._outbox = queue.Queue()
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=self._events(self._outbox),
            )
        if self.fail_posts:
            self.fail_posts -= 1
            return httpx.Response(503)
        body = json.loads(request.content)
        if "id" in body:
            self.calls.append(body["method"])
            self._outbox.put({"jsonrpc": "2.0", "id": body["id"], "result": self.result_for(body)})
        return httpx.Response(202)

    def result_for(self, body):
        if body["method"] == "initialize":
            return INIT_RESULT
        if body["method"] == "tools/list":
            return {"tools": [{"name": "lookup", "inputSchema": {"type": "object"}}]}
        return {"content": [{"type": "text", "text": f"found {body['params']['arguments']['q']}"}]}

    def _events(self, outbox):
        yield b"event: endpoint\ndata: /messages?session=abc\n\n"
        while not self._stopped.is_set():
            try:
                reply = outbox.get(timeout=0.05)
            except queue.Empty:
                continue
            yield f"event: message\ndata: {json.dumps(reply)}\n\n".encode()


@pytest.fixture
def server():
    server = FakeSSEServer()
    yield server
    server.stop()


def make_transport(server, **kwargs):
    return SSETransport(
        "remote",
        "http://mcp.local/sse",
        client_factory=server.client,
        reconnect_base_delay=0.01,
        **kwargs,
    )


class TestSSETransport:
    """Tests for SSETransport."""

    def test_request_round_trip(self, server):
        """Test requests are POSTed to the endpoint and answered on the stream."""
        transport = make_transport(server)
        client = MCPClient("remote", transport)
        try:
            client.initialize(timeout=5)
            assert [t.name for t in client.list_tools(timeout=5)] == ["lookup"]
            assert client.call_tool("lookup", {"q": "x"}, timeout=5).content == "found x"
        finally:
            client.close()
        assert server.connections == 1

    def test_call_retried_after_reconnect(self, server):
        """Test a transport error reconnects, re-handshakes and retries once."""
        transport = make_transport(server)
        client = MCPClient("remote", transport)
        reconnected = threading.Event()
        transport.on_reconnected = reconnected.set
        try:
            client.initialize(timeout=5)
            server.fail_posts = 1

            result = client.call_tool("lookup", {"q": "y"}, timeout=5)

            assert result.content == "found y"
            assert server.connections == 2
            assert server.calls == ["initialize", "initialize", "tools/call"]
            assert reconnected.wait(1)
            assert transport.state.status == TransportStatus.READY
        finally:
            client.close()

    def test_reconnect_requests_coalesce(self, server):
        """Test failure reports share one queued attempt."""
        transport = make_transport(server)

        first = transport.request_reconnect()
        second = transport.request_reconnect()

        assert first is second
        assert not first.is_set()
        transport.close()
        assert first.is_set()

    def test_concurrent_failures_share_one_attempt(self, server):
        """Test failure reports from many threads get the same completion event."""
        transport = make_transport(server)
        events = []
        gate = threading.Barrier(8)

        def report():
            gate.wait(5)
            events.append(transport.request_reconnect())

        threads = [threading.Thread(target=report) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert len(events) == 8
        assert len({id(e) for e in events}) == 1
        transport.close()

    def test_reconnect_after_close_is_noop(self, server):
        """Test a closed transport does not queue reconnects."""
        transport = make_transport(server)
        transport.close()

        assert transport.request_reconnect().is_set()
        assert transport.reconnect(timeout=0.1) is False

    def test_gives_up_to_idle(self):
        """Test exhausted reconnect attempts leave the transport idle."""

        def refusing_client():
            def handler(request):
                raise httpx.ConnectError("refused", request=request)
            return httpx.Client(transport=httpx.MockTransport(handler))

        transport = SSETransport(
            "down",
            "http://mcp.local/sse",
            client_factory=refusing_client,
            max_reconnect_attempts=2,
            reconnect_base_delay=0.01,
        )
        try:
            transport._reconnect_once()
            assert transport.state.status == TransportStatus.IDLE
            assert "refused" in transport.state.last_error
        finally:
            transport.close()
