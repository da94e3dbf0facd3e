"""
SSE transport - MCP over a persistent Server-Sent-Events stream.

The server pushes JSON-RPC replies down a long-lived ``GET`` event stream;
the first ``endpoint`` event names the URL that outbound requests are
POSTed to. Any stream or POST failure asks the reconnect loop for a new
connection. Requests are coalesced through a single-slot queue: callers
that report a failure while an attempt is queued or running share that
attempt's completion event.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional
from urllib.parse import urljoin

import httpx
from httpx_sse import connect_sse
from mcp.types import JSONRPCError, JSONRPCNotification, JSONRPCRequest, JSONRPCResponse

from mcpbridge.core.errors import (
    OperationTimeout,
    ProtocolError,
    TransportClosedError,
    TransportError,
)
from mcpbridge.core.http import is_retryable_status, log_request
from mcpbridge.mcp.transport import (
    POLL_INTERVAL,
    Transport,
    TransportKind,
    TransportStatus,
    wait_for,
)

logger = logging.getLogger(__name__)


class RWLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writing = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True

    def release_write(self) -> None:
        with self._cond:
            self._writing = False
            self._cond.notify_all()


class _Connection:
    """One GET stream plus the endpoint it advertised."""

    def __init__(self, http: httpx.Client):
        self.http = http
        self.endpoint: Optional[str] = None
        self.endpoint_ready = threading.Event()
        self.closed = threading.Event()
        self.error: Optional[BaseException] = None
        self.pending: Dict[str, Future] = {}
        self.pending_lock = threading.Lock()

    def fail_pending(self, exc: BaseException) -> None:
        with self.pending_lock:
            waiting, self.pending = self.pending, {}
        for future in waiting.values():
            if not future.done():
                future.set_exception(exc)

    def close(self) -> None:
        self.closed.set()
        self.http.close()


class SSETransport(Transport):
    """JSON-RPC over an MCP SSE endpoint with self-driven reconnection."""

    kind = TransportKind.SSE

    MAX_RECONNECT_ATTEMPTS = 5
    RECONNECT_BASE_DELAY = 1.0
    CONNECT_TIMEOUT = 30.0

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        http_timeout: float = 30.0,
        max_reconnect_attempts: Optional[int] = None,
        reconnect_base_delay: Optional[float] = None,
        client_factory: Optional[Any] = None,
    ):
        super().__init__(name)
        self.url = url
        self.headers = dict(headers or {})
        self.http_timeout = http_timeout
        if max_reconnect_attempts is not None:
            self.MAX_RECONNECT_ATTEMPTS = max_reconnect_attempts
        if reconnect_base_delay is not None:
            self.RECONNECT_BASE_DELAY = reconnect_base_delay
        self._client_factory = client_factory or self._default_client
        self._conn: Optional[_Connection] = None
        self._conn_lock = RWLock()
        self._reconnect_requests: "queue.Queue[threading.Event]" = queue.Queue(maxsize=1)
        self._queued_attempt: Optional[threading.Event] = None
        self._running_attempt: Optional[threading.Event] = None
        self._attempt_lock = threading.Lock()
        self._stopping = threading.Event()
        self._loop: Optional[threading.Thread] = None
        self.on_reconnected: Optional[Callable[[], None]] = None

    def _default_client(self) -> httpx.Client:
        return httpx.Client(
            headers=self.headers,
            timeout=httpx.Timeout(self.http_timeout, read=None),
            event_hooks={"request": [log_request]},
        )

    @property
    def supports_reconnect(self) -> bool:
        return True

    # ── Connections ───────────────────────────────────────────────────────

    def _connect(self, timeout: Optional[float]) -> _Connection:
        conn = _Connection(self._client_factory())
        threading.Thread(
            target=self._stream, args=(conn,), name=f"mcp-{self.name}-sse", daemon=True
        ).start()
        wait = timeout or self.CONNECT_TIMEOUT
        deadline = time.monotonic() + wait
        while not conn.endpoint_ready.wait(POLL_INTERVAL):
            if conn.closed.is_set() or time.monotonic() >= deadline:
                conn.close()
                reason = conn.error or "no endpoint event received"
                raise TransportError(f"SSE connect to {self.url} failed: {reason}", cause=conn.error)
        logger.info("Connected to SSE server '%s' (endpoint %s)", self.name, conn.endpoint)
        return conn

    def _stream(self, conn: _Connection) -> None:
        try:
            with connect_sse(conn.http, "GET", self.url) as source:
                source.response.raise_for_status()
                for event in source.iter_sse():
                    if event.event == "endpoint":
                        conn.endpoint = urljoin(self.url, event.data.strip())
                        conn.endpoint_ready.set()
                    elif event.event in ("message", ""):
                        self._dispatch(conn, event.data)
        except Exception as exc:
            conn.error = exc
        finally:
            was_closed = conn.closed.is_set()
            conn.closed.set()
            failure = TransportError(
                f"SSE stream for '{self.name}' ended: {conn.error or 'closed by server'}",
                cause=conn.error,
            )
            conn.fail_pending(failure)
            if not was_closed and conn is self._conn and not self._stopping.is_set():
                logger.warning("SSE stream for '%s' lost: %s", self.name, conn.error or "closed by server")
                self.request_reconnect()

    def _dispatch(self, conn: _Connection, data: str) -> None:
        try:
            message = self.decode(data)
        except ProtocolError as exc:
            logger.warning("[%s] dropping malformed SSE message: %s", self.name, exc)
            return
        if not isinstance(message, (JSONRPCResponse, JSONRPCError)):
            logger.debug("[%s] ignoring server %s", self.name, type(message).__name__)
            return
        with conn.pending_lock:
            future = conn.pending.pop(str(message.id), None)
        if future is not None and not future.done():
            future.set_result(message)

    def _current(self) -> _Connection:
        self._conn_lock.acquire_read()
        try:
            conn = self._conn
        finally:
            self._conn_lock.release_read()
        if conn is None or conn.closed.is_set():
            raise TransportError(f"SSE transport for '{self.name}' is not connected")
        return conn

    # ── Variant operations ────────────────────────────────────────────────

    def _open(self, timeout: Optional[float]) -> None:
        conn = self._connect(timeout)
        self._conn_lock.acquire_write()
        try:
            self._conn = conn
        finally:
            self._conn_lock.release_write()
        if self._loop is None:
            self._loop = threading.Thread(
                target=self._reconnect_loop, name=f"mcp-{self.name}-reconnect", daemon=True
            )
            self._loop.start()

    def _request(self, envelope: JSONRPCRequest, timeout: Optional[float], cancel: Optional[threading.Event]) -> Any:
        return self._request_on(self._current(), envelope, timeout, cancel)

    def _request_on(
        self,
        conn: _Connection,
        envelope: JSONRPCRequest,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> Any:
        key = str(envelope.id)
        future: Future = Future()
        with conn.pending_lock:
            conn.pending[key] = future
        try:
            self._post(conn, envelope)
            done = threading.Event()
            future.add_done_callback(lambda _: done.set())
            if not wait_for(done, timeout, cancel):
                raise OperationTimeout(
                    f"request {envelope.method} to '{self.name}' timed out",
                    data={"reason": "context-deadline-exceeded"},
                )
            return future.result()
        finally:
            with conn.pending_lock:
                conn.pending.pop(key, None)

    def _post(self, conn: _Connection, envelope: Any) -> None:
        try:
            response = conn.http.post(
                conn.endpoint,
                content=self.encode(envelope),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            if conn is self._conn:
                self.request_reconnect()
            raise TransportError(f"POST to '{self.name}' failed: {exc}", cause=exc)
        if response.status_code >= 400:
            retryable = is_retryable_status(response.status_code)
            error_cls = TransportError if retryable else ProtocolError
            raise error_cls(
                f"POST to '{self.name}' returned HTTP {response.status_code}",
                data={"status_code": response.status_code},
            )

    def _notify(self, envelope: JSONRPCNotification) -> None:
        self._post(self._current(), envelope)

    def _close(self) -> None:
        self._stopping.set()
        self._conn_lock.acquire_write()
        try:
            conn, self._conn = self._conn, None
        finally:
            self._conn_lock.release_write()
        if conn is not None:
            conn.close()
            conn.fail_pending(TransportClosedError(f"transport for '{self.name}' is closed"))
        with self._attempt_lock:
            waiting = [e for e in (self._queued_attempt, self._running_attempt) if e is not None]
        for event in waiting:
            event.set()

    # ── Reconnection ──────────────────────────────────────────────────────

    def request_reconnect(self) -> threading.Event:
        """Ask the reconnect loop for a new connection.

        Returns the completion event of the attempt that will serve this
        request. Reports arriving while an attempt is queued or running
        share it.
        """
        with self._attempt_lock:
            if self._queued_attempt is not None:
                return self._queued_attempt
            if self._running_attempt is not None:
                return self._running_attempt
            done = threading.Event()
            if self._stopping.is_set():
                done.set()
                return done
            self._queued_attempt = done
            self._reconnect_requests.put_nowait(done)
            return done

    def reconnect(self, timeout: Optional[float] = None) -> bool:
        done = self.request_reconnect()
        budget = timeout
        if budget is None:
            budget = sum(
                i * self.RECONNECT_BASE_DELAY for i in range(1, self.MAX_RECONNECT_ATTEMPTS + 1)
            ) + self.MAX_RECONNECT_ATTEMPTS * self.CONNECT_TIMEOUT
        done.wait(budget)
        return self.state.status == TransportStatus.READY

    def _reconnect_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                done = self._reconnect_requests.get(timeout=0.5)
            except queue.Empty:
                continue
            with self._attempt_lock:
                self._queued_attempt = None
                self._running_attempt = done
            try:
                self._reconnect_once()
            finally:
                with self._attempt_lock:
                    self._running_attempt = None
                done.set()

    def _reconnect_once(self) -> None:
        self.state.status = TransportStatus.RECONNECTING
        for attempt in range(1, self.MAX_RECONNECT_ATTEMPTS + 1):
            if self._stopping.wait(attempt * self.RECONNECT_BASE_DELAY):
                return
            logger.info("Reconnecting to '%s' (attempt %d/%d)", self.name, attempt, self.MAX_RECONNECT_ATTEMPTS)
            try:
                conn = self._connect(None)
            except TransportError as exc:
                self.state.last_error = str(exc)
                logger.warning("Reconnect attempt %d for '%s' failed: %s", attempt, self.name, exc)
                continue
            try:
                if self.handshake is not None:
                    self.handshake(
                        lambda method, params=None, timeout=None: self.result_of(
                            self._request_on(
                                conn,
                                JSONRPCRequest(jsonrpc="2.0", id=self.next_id(), method=method, params=params),
                                timeout,
                                None,
                            )
                        ),
                        lambda method, params=None: self._post(
                            conn, JSONRPCNotification(jsonrpc="2.0", method=method, params=params)
                        ),
                    )
            except Exception as exc:
                conn.close()
                self.state.last_error = str(exc)
                logger.warning("Handshake after reconnect to '%s' failed: %s", self.name, exc)
                continue

            self._conn_lock.acquire_write()
            try:
                old, self._conn = self._conn, conn
            finally:
                self._conn_lock.release_write()
            if old is not None:
                old.close()
            if self._stopping.is_set():
                conn.close()
                return
            self.state.status = TransportStatus.READY
            self.state.last_error = None
            logger.info("Reconnected to '%s'", self.name)
            if self.on_reconnected is not None:
                self.on_reconnected()
            return

        logger.error("Giving up reconnecting to '%s' after %d attempts", self.name, self.MAX_RECONNECT_ATTEMPTS)
        self.state.status = TransportStatus.IDLE
