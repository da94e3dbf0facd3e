"""Tests for the retrying HTTP client and the HTTP MCP transport."""

import json
import threading

import httpx
import pytest

from mcpbridge.core.errors import Cancelled, OperationTimeout, ProtocolError, TransportError
from mcpbridge.core.http import RetryingClient, RetryPolicy, is_retryable_status, redact_headers
from mcpbridge.mcp.http import SESSION_HEADER, HTTPTransport


def sequence_handler(*responses):
    """MockTransport handler replaying ``responses`` (Response or exception)."""
    calls = []
    pending = list(responses)

    def handler(request):
        calls.append(request)
        item = pending.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    handler.calls = calls
    return handler


class TestRetryPolicy:
    """Tests for RetryPolicy and status classification."""

    def test_backoff_grows_and_caps(self):
        """Test exponential growth with jitter up to half the step."""
        policy = RetryPolicy(base_backoff=0.5, max_backoff=2.0, multiplier=2.0)
        assert 0.5 <= policy.backoff(1) <= 0.75
        assert 1.0 <= policy.backoff(2) <= 1.5
        assert 2.0 <= policy.backoff(5) <= 3.0

    @pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (429, True), (404, False), (400, False)])
    def test_retryable_status(self, status, retryable):
        """Test 5xx and 429 are retryable."""
        assert is_retryable_status(status) is retryable

    def test_redact_headers(self):
        """Test credentials are masked."""
        headers = redact_headers({"Authorization": "Bearer x", "X-Api-Key": "k", "Accept": "json"})
        assert headers == {"Authorization": "[REDACTED]", "X-Api-Key": "[REDACTED]", "Accept": "json"}


class TestRetryingClient:
    """Tests for RetryingClient."""

    def make(self, handler, attempts=3):
        sleeps = []
        client = RetryingClient(
            policy=RetryPolicy(max_attempts=attempts),
            transport=httpx.MockTransport(handler),
            sleep=sleeps.append,
        )
        return client, sleeps

    def test_retries_5xx(self):
        """Test a 503 is retried and the success returned."""
        handler = sequence_handler(httpx.Response(503), httpx.Response(200, json={"ok": True}))
        client, sleeps = self.make(handler)

        response = client.post("http://llm/api")

        assert response.json() == {"ok": True}
        assert len(handler.calls) == 2
        assert len(sleeps) == 1

    def test_client_errors_not_retried(self):
        """Test a 400 is returned immediately."""
        handler = sequence_handler(httpx.Response(400))
        client, sleeps = self.make(handler)

        assert client.get("http://llm/api").status_code == 400
        assert sleeps == []

    def test_last_response_returned_when_exhausted(self):
        """Test the final retryable response is returned, not raised."""
        handler = sequence_handler(httpx.Response(502), httpx.Response(502))
        client, _ = self.make(handler, attempts=2)
        assert client.post("http://llm/api").status_code == 502

    def test_transport_errors_raise_after_attempts(self):
        """Test connection failures raise TransportError."""
        request = httpx.Request("POST", "http://llm/api")
        handler = sequence_handler(*(httpx.ConnectError("refused", request=request) for _ in range(3)))
        client, sleeps = self.make(handler)

        with pytest.raises(TransportError) as exc_info:
            client.post("http://llm/api")
        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        assert len(sleeps) == 2

    def test_cancelled(self):
        """Test a set cancel token stops before sending."""
        handler = sequence_handler()
        client, _ = self.make(handler)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(Cancelled):
            client.post("http://llm/api", cancel=cancel)
        assert handler.calls == []


def rpc_server(session_id="sess-1", event_stream=False):
    """Handler answering JSON-RPC requests and recording session headers."""
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append({"body": body, "session": request.headers.get(SESSION_HEADER)})
        if "id" not in body:
            return httpx.Response(202)
        reply = {"jsonrpc": "2.0", "id": body["id"], "result": {"echo": body["method"]}}
        if event_stream:
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream", SESSION_HEADER: session_id},
                content=f"event: message\ndata: {json.dumps(reply)}\n\n".encode(),
            )
        return httpx.Response(200, json=reply, headers={SESSION_HEADER: session_id})

    handler.seen = seen
    return handler


class TestHTTPTransport:
    """Tests for HTTPTransport."""

    def make(self, handler):
        transport = HTTPTransport(
            "remote",
            "http://mcp.local/mcp",
            headers={"Authorization": "Bearer t"},
            policy=RetryPolicy(max_attempts=1),
            http_transport=httpx.MockTransport(handler),
        )
        transport.open()
        return transport

    def test_json_reply_and_session(self):
        """Test a JSON reply and the session id echo."""
        handler = rpc_server()
        transport = self.make(handler)

        assert transport.request("initialize", {}) == {"echo": "initialize"}
        transport.notify("notifications/initialized")
        transport.request("tools/list", {})

        assert [s["session"] for s in handler.seen] == [None, "sess-1", "sess-1"]
        assert handler.seen[0]["body"]["jsonrpc"] == "2.0"

    def test_event_stream_reply(self):
        """Test a text/event-stream answer is parsed."""
        transport = self.make(rpc_server(event_stream=True))
        assert transport.request("tools/list", {}) == {"echo": "tools/list"}

    def test_http_errors(self):
        """Test 4xx is a protocol error and 5xx a transport error."""
        transport = self.make(sequence_handler(httpx.Response(404), httpx.Response(503)))

        with pytest.raises(ProtocolError):
            transport.request("tools/list", {})
        with pytest.raises(TransportError):
            transport.request("tools/list", {})

    def test_timeout(self):
        """Test read timeouts become OperationTimeout."""
        request = httpx.Request("POST", "http://mcp.local/mcp")
        transport = self.make(sequence_handler(httpx.ReadTimeout("slow", request=request)))

        with pytest.raises(OperationTimeout) as exc_info:
            transport.request("tools/call", {"name": "x"})
        assert exc_info.value.data["reason"] == "context-deadline-exceeded"
