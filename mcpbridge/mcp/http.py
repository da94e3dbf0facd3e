"""
HTTP transport - stateless MCP over request/response POSTs.

Each JSON-RPC request is one POST. Servers may answer with a JSON body or
a short ``text/event-stream`` carrying the reply; both are accepted. A
``Mcp-Session-Id`` header returned by the server is echoed on later
requests.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

import httpx
from httpx_sse import EventSource
from mcp.types import JSONRPCError, JSONRPCNotification, JSONRPCRequest, JSONRPCResponse

from mcpbridge.core.errors import OperationTimeout, ProtocolError, TransportError
from mcpbridge.core.http import RetryingClient, RetryPolicy, is_retryable_status
from mcpbridge.mcp.transport import Transport, TransportKind

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class HTTPTransport(Transport):
    """JSON-RPC over plain HTTP POST."""

    kind = TransportKind.HTTP

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        http_timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(name)
        self.url = url
        self.headers = dict(headers or {})
        self.http_timeout = http_timeout
        self._http = RetryingClient(
            timeout=http_timeout,
            policy=policy,
            headers=self.headers,
            transport=http_transport,
        )
        self.session_id: Optional[str] = None

    def _open(self, timeout: Optional[float]) -> None:
        pass

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    def _send(self, envelope: Any, timeout: Optional[float], cancel: Optional[threading.Event]) -> httpx.Response:
        try:
            response = self._http.post(
                self.url,
                content=self.encode(envelope),
                headers=self._headers(),
                timeout=timeout or self.http_timeout,
                cancel=cancel,
            )
        except TransportError as exc:
            if isinstance(exc.cause, httpx.TimeoutException):
                raise OperationTimeout(
                    f"request to '{self.name}' timed out",
                    data={"reason": "context-deadline-exceeded"},
                    cause=exc,
                )
            raise
        session = response.headers.get(SESSION_HEADER)
        if session:
            self.session_id = session
        if response.status_code >= 400:
            retryable = is_retryable_status(response.status_code)
            error_cls = TransportError if retryable else ProtocolError
            raise error_cls(
                f"'{self.name}' returned HTTP {response.status_code}",
                data={"status_code": response.status_code},
            )
        return response

    def _request(self, envelope: JSONRPCRequest, timeout: Optional[float], cancel: Optional[threading.Event]) -> Any:
        response = self._send(envelope, timeout, cancel)
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            for event in EventSource(response).iter_sse():
                if not event.data:
                    continue
                message = self.decode(event.data)
                if isinstance(message, (JSONRPCResponse, JSONRPCError)) and str(message.id) == str(envelope.id):
                    return message
            raise ProtocolError(f"'{self.name}' closed the event stream without a reply")
        return self.decode(response.content)

    def _notify(self, envelope: JSONRPCNotification) -> None:
        self._send(envelope, None, None)

    def _close(self) -> None:
        self._http.close()
