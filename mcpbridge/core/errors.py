"""
mcpbridge errors - Domain-typed exception hierarchy.

Every error carries a kebab-case ``code``, the ``domain`` it belongs to,
an optional ``data`` payload and a ``retryable`` flag that the retry
policies consult.
"""

from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    domain = "bridge"
    default_code = "internal-error"
    default_retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.data = data or {}
        self.retryable = self.default_retryable if retryable is None else retryable
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"[{self.domain}/{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "domain": self.domain,
            "code": self.code,
            "message": self.message,
            "data": self.data,
            "retryable": self.retryable,
        }


# ── Config ───────────────────────────────────────────────────────────────


class ConfigError(BridgeError):
    """Raised when the configuration is invalid or incomplete."""

    domain = "config"
    default_code = "invalid-config"


# ── MCP ──────────────────────────────────────────────────────────────────


class MCPError(BridgeError):
    """Base exception for MCP client and transport failures."""

    domain = "mcp"
    default_code = "mcp-error"


class TransportError(MCPError):
    """Transport-level failure; the request may be retried."""

    default_code = "transport-error"
    default_retryable = True


class TransportClosedError(TransportError):
    """The transport is closed; outstanding requests were abandoned."""

    default_code = "transport-closed"


class ProtocolError(MCPError):
    """The server answered with a JSON-RPC error or a malformed payload."""

    default_code = "protocol-error"


class ClientCreationError(MCPError):
    default_code = "client-creation-failed"


class InitializationError(MCPError):
    """The MCP handshake failed.

    ``data["reason"]`` is ``context-deadline-exceeded`` when the handshake
    timed out and ``process-exited`` when a stdio child died first.
    """

    default_code = "initialization-failed"


class ToolDiscoveryError(MCPError):
    default_code = "tool-discovery-failed"


class ToolCallError(MCPError):
    default_code = "tool-call-failed"


# ── LLM ──────────────────────────────────────────────────────────────────


class LLMError(BridgeError):
    """Raised when an LLM provider call fails."""

    domain = "llm"
    default_code = "provider-unreachable"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        if status_code is not None:
            kwargs.setdefault("code", "status-non-2xx")
            kwargs.setdefault("data", {"status_code": status_code})
        super().__init__(message, **kwargs)
        self.status_code = status_code


# ── Bridge ───────────────────────────────────────────────────────────────


class ToolArgsError(BridgeError):
    """Tool arguments do not validate against the tool's input schema."""

    default_code = "tool-args-invalid"

    def __init__(self, message: str, problems: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.problems = problems or []


class OperationTimeout(BridgeError):
    default_code = "context-deadline-exceeded"


class Cancelled(BridgeError):
    default_code = "cancelled"


# ── Front-end ────────────────────────────────────────────────────────────


class FrontendError(BridgeError):
    domain = "frontend"
    default_code = "post-failed"


def is_retryable(exc: BaseException) -> bool:
    """Return True when ``exc`` is classified as retryable."""
    return isinstance(exc, BridgeError) and exc.retryable


def is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, FutureTimeoutError, OperationTimeout)):
        return True
    if isinstance(exc, BridgeError):
        if exc.code == "context-deadline-exceeded" or exc.data.get("reason") == "context-deadline-exceeded":
            return True
        return exc.cause is not None and is_timeout(exc.cause)
    return False


def user_message(exc: BaseException) -> str:
    """Render ``exc`` as text that is safe to show to a chat user."""
    if is_timeout(exc):
        return "The request timed out. Please try again."
    if isinstance(exc, BridgeError):
        return exc.message
    return str(exc)
