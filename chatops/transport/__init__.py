"""Transport adapters for talking JSON-RPC to MCP tool servers."""

from __future__ import annotations

from ..config import ServerSpec
from ..errors import ConfigError
from ._base import Transport
from ._http import StreamableHTTPTransport
from ._sse import SSETransport
from ._stdio import StdioTransport

__all__ = [
    "SSETransport",
    "StdioTransport",
    "StreamableHTTPTransport",
    "Transport",
    "create_transport",
]


def create_transport(spec: ServerSpec) -> Transport:
    """Build the (unopened) transport a server spec asks for."""
    if spec.transport == "stdio":
        return StdioTransport(spec.id, spec.command, spec.args, spec.env, spec.cwd)
    if spec.transport == "sse":
        return SSETransport(spec.id, spec.url, spec.headers)
    if spec.transport == "http":
        return StreamableHTTPTransport(spec.id, spec.url, spec.headers)
    raise ConfigError(f"MCP server '{spec.id}': unknown transport '{spec.transport}'")
