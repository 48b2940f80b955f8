"""Error taxonomy shared by transports, sessions, the dispatcher and the chat loop.

Every error carries a stable ``status`` string. Those strings are what the
dispatcher puts into ToolResults and what operators see in logs and in the
``/api/servers`` listing, so they must not change.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    status = "internal-error"


class ConfigError(BridgeError):
    status = "config-error"


class TransportError(BridgeError):
    status = "transport-error"


class HandshakeError(BridgeError):
    status = "handshake-error"


class DeadlineExceeded(BridgeError):
    status = "timeout"


class ToolNotFound(BridgeError):
    status = "not-found"


class ToolDenied(BridgeError):
    status = "denied"


class ToolError(BridgeError):
    status = "tool-error"


class RPCError(ToolError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
        self.data = data


class LLMError(BridgeError):
    status = "llm-error"
