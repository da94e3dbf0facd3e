"""
MCP transports - JSON-RPC channels to a single MCP server.

The transport abstraction is a tagged variant: every transport carries a
``kind`` tag and implements the same small operation table (``open``,
``request``, ``notify``, ``close``). ``mcpbridge.mcp.factory`` maps tags
to implementations; new transports are added by registering a new tag.

This module holds the shared base and the stdio variant, which spawns the
server as a child process and speaks line-framed JSON-RPC over its pipes.
"""

from __future__ import annotations

import itertools
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from mcp.types import (
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)
from pydantic import ValidationError

from mcpbridge.core.errors import (
    Cancelled,
    OperationTimeout,
    ProtocolError,
    TransportClosedError,
    TransportError,
)

logger = logging.getLogger(__name__)

# Granularity for waits that must also watch a cancellation token.
POLL_INTERVAL = 0.1

Handshake = Callable[[Callable[..., Dict[str, Any]], Callable[..., None]], None]


class TransportKind(str, Enum):
    STDIO = "stdio"
    SSE = "sse"
    HTTP = "http"


class TransportStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class TransportState:
    kind: TransportKind
    status: TransportStatus = TransportStatus.IDLE
    last_error: Optional[str] = None


def wait_for(event: threading.Event, timeout: Optional[float], cancel: Optional[threading.Event] = None) -> bool:
    """Wait for ``event`` while honouring an optional cancellation token.

    Returns True if the event fired, False on timeout.

    Raises:
        Cancelled: If ``cancel`` is set first.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if cancel is not None and cancel.is_set():
            raise Cancelled("operation cancelled")
        remaining = None if deadline is None else deadline - time.monotonic()
        if remaining is not None and remaining <= 0:
            return event.is_set()
        step = POLL_INTERVAL if remaining is None else min(POLL_INTERVAL, remaining)
        if event.wait(step):
            return True


class Transport:
    """
    Base class for MCP transports.

    Subclasses implement ``_open``, ``_request``, ``_notify`` and ``_close``;
    the public wrappers keep ``state`` current and encode envelopes.
    """

    kind: TransportKind

    def __init__(self, name: str):
        self.name = name
        self.state = TransportState(kind=self.kind)
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()
        self._released = False
        self._release_lock = threading.Lock()
        self.handshake: Optional[Handshake] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def open(self, timeout: Optional[float] = None) -> None:
        """Establish the channel. Idempotent while ready."""
        if self.state.status == TransportStatus.READY:
            return
        if self.state.status == TransportStatus.CLOSED:
            raise TransportClosedError(f"transport for '{self.name}' is closed")
        self.state.status = TransportStatus.STARTING
        try:
            self._open(timeout)
        except Exception as exc:
            self.state.status = TransportStatus.IDLE
            self.state.last_error = str(exc)
            raise
        if self.state.status == TransportStatus.STARTING:
            self.state.status = TransportStatus.READY

    def close(self) -> None:
        """Release the channel. Safe to call more than once.

        Resources are released on the first call even when the channel was
        already marked closed by the remote side going away.
        """
        with self._release_lock:
            if self._released:
                return
            self._released = True
        self.state.status = TransportStatus.CLOSED
        self._close()

    @property
    def is_closed(self) -> bool:
        return self.state.status == TransportStatus.CLOSED

    @property
    def supports_reconnect(self) -> bool:
        return False

    def reconnect(self, timeout: Optional[float] = None) -> bool:
        """Re-establish the channel; only SSE transports support this."""
        return False

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    def next_id(self) -> str:
        with self._id_lock:
            return f"{self.name}-{next(self._ids)}"

    def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Send a JSON-RPC request and return its ``result`` object."""
        if self.is_closed:
            raise TransportClosedError(f"transport for '{self.name}' is closed")
        envelope = JSONRPCRequest(jsonrpc="2.0", id=self.next_id(), method=method, params=params)
        logger.debug("[%s] -> %s id=%s", self.name, method, envelope.id)
        reply = self._request(envelope, timeout, cancel)
        return self.result_of(reply)

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        envelope = JSONRPCNotification(jsonrpc="2.0", method=method, params=params)
        logger.debug("[%s] -> notification %s", self.name, method)
        self._notify(envelope)

    @staticmethod
    def encode(envelope: Any) -> str:
        return envelope.model_dump_json(by_alias=True, exclude_none=True)

    @staticmethod
    def decode(raw: Any) -> Any:
        """Parse one JSON-RPC envelope into its concrete mcp.types model."""
        try:
            return JSONRPCMessage.model_validate_json(raw).root
        except ValidationError as exc:
            raise ProtocolError(f"malformed JSON-RPC message: {exc}", cause=exc)

    def result_of(self, reply: Any) -> Dict[str, Any]:
        if isinstance(reply, JSONRPCError):
            err = reply.error
            raise ProtocolError(
                f"MCP error {err.code}: {err.message}",
                data={"rpc_code": err.code, "rpc_data": err.data},
            )
        if isinstance(reply, JSONRPCResponse):
            logger.debug("[%s] <- result id=%s", self.name, reply.id)
            return reply.result or {}
        raise ProtocolError(f"unexpected reply type {type(reply).__name__}")

    # ── Variant operations ────────────────────────────────────────────────

    def _open(self, timeout: Optional[float]) -> None:
        raise NotImplementedError

    def _request(self, envelope: JSONRPCRequest, timeout: Optional[float], cancel: Optional[threading.Event]) -> Any:
        raise NotImplementedError

    def _notify(self, envelope: JSONRPCNotification) -> None:
        raise NotImplementedError

    def _close(self) -> None:
        raise NotImplementedError


_EOF = object()


class StdioTransport(Transport):
    """
    Communicate with an MCP server over stdin/stdout (JSON-RPC).

    One reader thread turns stdout lines into envelopes on a queue and one
    drain thread forwards stderr to the ``mcpbridge.mcp.stderr.<name>``
    logger. A lock serializes the send/receive cycle, so at most one
    request is in flight per child.
    """

    kind = TransportKind.STDIO

    SHUTDOWN_GRACE = 2.0
    SIGINT_GRACE = 1.0

    def __init__(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        super().__init__(name)
        self.command = command
        self.args = args or []
        self.env = env or {}
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._exited = threading.Event()
        self._stderr_logger = logging.getLogger(f"mcpbridge.mcp.stderr.{name}")

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    def _open(self, timeout: Optional[float]) -> None:
        merged_env = {**os.environ, **self.env}
        try:
            self._process = subprocess.Popen(
                [self.command] + self.args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=merged_env,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise TransportError(
                f"MCP server command not found or not executable: {self.command}",
                retryable=False,
                cause=exc,
            )
        logger.info("Started MCP server '%s' (pid %s): %s", self.name, self._process.pid, self.command)
        threading.Thread(target=self._read_stdout, name=f"mcp-{self.name}-stdout", daemon=True).start()
        threading.Thread(target=self._drain_stderr, name=f"mcp-{self.name}-stderr", daemon=True).start()

    def _read_stdout(self) -> None:
        process = self._process
        for raw in iter(process.stdout.readline, b""):
            line = raw.strip()
            if not line:
                continue
            try:
                message = self.decode(line)
            except ProtocolError as exc:
                logger.warning("[%s] dropping unparseable stdout line: %s", self.name, exc)
                continue
            self._inbox.put(message)
        process.stdout.close()
        if self.state.status != TransportStatus.CLOSED:
            logger.warning("MCP server '%s' closed its stdout (exit code %s)", self.name, process.poll())
            self.state.status = TransportStatus.CLOSED
            self.state.last_error = "process exited"
        self._exited.set()
        self._inbox.put(_EOF)

    def _drain_stderr(self) -> None:
        for raw in iter(self._process.stderr.readline, b""):
            text = raw.decode(errors="replace").rstrip()
            if text:
                self._stderr_logger.debug(text)
        self._process.stderr.close()

    def _write(self, envelope: Any) -> None:
        line = self.encode(envelope) + "\n"
        with self._write_lock:
            try:
                self._process.stdin.write(line.encode())
                self._process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                raise TransportClosedError(
                    f"MCP server '{self.name}' is not accepting input: {exc}",
                    data={"reason": "process-exited"},
                    cause=exc,
                )

    def _request(self, envelope: JSONRPCRequest, timeout: Optional[float], cancel: Optional[threading.Event]) -> Any:
        if self._process is None:
            raise TransportError(f"transport for '{self.name}' is not open", retryable=False)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            self._write(envelope)
            while True:
                if cancel is not None and cancel.is_set():
                    raise Cancelled(f"request {envelope.method} to '{self.name}' cancelled")
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise OperationTimeout(
                        f"request {envelope.method} to '{self.name}' timed out",
                        data={"reason": "context-deadline-exceeded"},
                    )
                step = POLL_INTERVAL if remaining is None else min(POLL_INTERVAL, remaining)
                try:
                    message = self._inbox.get(timeout=step)
                except queue.Empty:
                    continue
                if message is _EOF:
                    self._inbox.put(_EOF)
                    raise TransportClosedError(
                        f"MCP server '{self.name}' exited",
                        data={"reason": "process-exited"},
                    )
                if isinstance(message, (JSONRPCResponse, JSONRPCError)) and str(message.id) == str(envelope.id):
                    return message
                logger.debug("[%s] ignoring unsolicited %s", self.name, type(message).__name__)

    def _notify(self, envelope: JSONRPCNotification) -> None:
        if self._process is None:
            raise TransportError(f"transport for '{self.name}' is not open", retryable=False)
        self._write(envelope)

    def _close(self) -> None:
        process = self._process
        if process is None:
            return
        try:
            process.stdin.close()
        except OSError:
            pass
        try:
            process.wait(timeout=self.SHUTDOWN_GRACE)
        except subprocess.TimeoutExpired:
            logger.info("MCP server '%s' did not exit after stdin closed, sending SIGINT", self.name)
            try:
                process.send_signal(signal.SIGINT)
                process.wait(timeout=self.SIGINT_GRACE)
            except subprocess.TimeoutExpired:
                logger.warning("MCP server '%s' ignored SIGINT, killing", self.name)
                process.kill()
                process.wait()
        self._inbox.put(_EOF)
        logger.info("Stopped MCP server '%s'", self.name)

