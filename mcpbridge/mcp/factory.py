"""Transport factory - maps transport tags to implementations."""

from typing import Callable, Dict, Optional

from mcpbridge.core.errors import ClientCreationError
from mcpbridge.core.http import RetryPolicy
from mcpbridge.mcp.http import HTTPTransport
from mcpbridge.mcp.sse import SSETransport
from mcpbridge.mcp.transport import StdioTransport, Transport, TransportKind
from mcpbridge.validation.config import MCPServerConfig

TransportBuilder = Callable[..., Transport]


def _build_stdio(name: str, server: MCPServerConfig, **_options) -> Transport:
    return StdioTransport(name, server.command, args=server.args, env=server.env)


def _build_sse(name: str, server: MCPServerConfig, http_timeout: float = 30.0, **_options) -> Transport:
    return SSETransport(name, server.url, headers=server.headers, http_timeout=http_timeout)


def _build_http(
    name: str,
    server: MCPServerConfig,
    http_timeout: float = 30.0,
    policy: Optional[RetryPolicy] = None,
    **_options,
) -> Transport:
    return HTTPTransport(name, server.url, headers=server.headers, http_timeout=http_timeout, policy=policy)


class TransportFactory:
    """Factory for creating transport instances from server configs."""

    _transports: Dict[TransportKind, TransportBuilder] = {
        TransportKind.STDIO: _build_stdio,
        TransportKind.SSE: _build_sse,
        TransportKind.HTTP: _build_http,
    }

    @classmethod
    def register(cls, kind: TransportKind, builder: TransportBuilder) -> None:
        """Register a builder for a transport tag."""
        cls._transports[kind] = builder

    @classmethod
    def create(cls, name: str, server: MCPServerConfig, **options) -> Transport:
        """
        Create the transport a server config asks for.

        Args:
            name: Server name, used for logging and request IDs.
            server: The server's configuration.
            **options: ``http_timeout`` and ``policy`` for network transports.

        Raises:
            ClientCreationError: If the transport tag is unknown.
        """
        try:
            kind = TransportKind(server.transport)
        except ValueError:
            raise ClientCreationError(f"Unknown transport '{server.transport}' for server '{name}'")
        builder = cls._transports.get(kind)
        if builder is None:
            raise ClientCreationError(f"No transport registered for '{kind.value}'")
        return builder(name, server, **options)
