"""One MCP server session: handshake, tool catalog and tool calls over a transport."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from mcp import types
from pydantic import ValidationError

from . import __version__
from .config import ServerSpec
from .deadline import Deadline
from .errors import (
    BridgeError,
    DeadlineExceeded,
    HandshakeError,
    RPCError,
    ToolError,
    TransportError,
)
from .transport import Transport

log = logging.getLogger(__name__)

LIST_TOOLS_TIMEOUT = 20.0
CALL_TOOL_TIMEOUT = 60.0
CLIENT_INFO = {"name": "mcp-chatops", "version": __version__}


class SessionState(str, Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass(frozen=True)
class ToolDef:
    name: str
    description: str = ""
    input_schema: dict = field(default_factory=dict)
    # Fields the server sent that we don't model (annotations, title, ...).
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_mcp(cls, tool: types.Tool) -> ToolDef:
        data = tool.model_dump(by_alias=True, mode="json", exclude_none=True)
        name = data.pop("name")
        description = data.pop("description", "") or ""
        schema = data.pop("inputSchema", None) or {"type": "object", "properties": {}}
        return cls(name=name, description=description, input_schema=schema, extra=data)


@dataclass
class CallOutcome:
    text: str
    is_error: bool = False
    structured: Any = None


def render_content(blocks: list) -> str:
    """Flatten tools/call content blocks into text for the LLM."""
    parts = []
    for block in blocks:
        kind = getattr(block, "type", None)
        if kind == "text":
            parts.append(block.text)
        elif kind in ("image", "audio"):
            parts.append(f"[{kind}: {block.mimeType}]")
        elif kind == "resource":
            resource = block.resource
            text = getattr(resource, "text", None)
            parts.append(text if text is not None else f"[resource: {resource.uri}]")
        elif kind == "resource_link":
            parts.append(f"[resource: {block.uri}]")
        else:
            parts.append(str(block))
    return "\n".join(parts) if parts else "Tool returned no output."


class ServerSession:
    """Owns one transport and walks it through created -> ready -> closed.

    Requests are serialized: one JSON-RPC request in flight per session.
    Waiting for the session counts against the caller's deadline.
    """

    def __init__(self, spec: ServerSpec, transport: Transport):
        self.spec = spec
        self.state = SessionState.CREATED
        self.tools: list[ToolDef] | None = None
        self.last_error: BridgeError | None = None
        self.server_info: dict = {}
        self.capabilities: dict = {}
        self.protocol_version: str | None = None
        self._transport = transport
        self._lock = asyncio.Lock()
        transport.add_close_callback(self._on_transport_closed)

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def transport(self) -> Transport:
        return self._transport

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, deadline: Deadline | None = None) -> None:
        """Open the transport and perform the MCP handshake. Exactly once."""
        if self.state is not SessionState.CREATED:
            raise BridgeError(f"{self.id}: initialize already called (state {self.state.value})")

        budget = self.spec.initialize_timeout
        deadline = deadline.shorten(budget) if deadline else Deadline.after(budget)
        self.state = SessionState.INITIALIZING
        try:
            await self._transport.open(deadline.remaining())
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": types.LATEST_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
                deadline,
            )
            try:
                init = types.InitializeResult.model_validate(result)
            except ValidationError as e:
                raise HandshakeError(f"{self.id}: malformed initialize result: {e}") from e
            await self._transport.notify("notifications/initialized")
        except RPCError as e:
            self._degrade(HandshakeError(f"{self.id}: initialize failed: {e}"))
            raise self.last_error from e
        except BridgeError as e:
            self._degrade(e)
            raise

        if self.state is not SessionState.INITIALIZING:
            # The transport went away (or we were closed) while finishing up.
            raise self.last_error or TransportError(f"{self.id}: session is {self.state.value}")

        self.server_info = init.serverInfo.model_dump(mode="json", exclude_none=True)
        self.capabilities = init.capabilities.model_dump(mode="json", exclude_none=True)
        self.protocol_version = str(init.protocolVersion)
        self.state = SessionState.READY
        log.info(
            f"[{self.id}] Initialized {self.server_info.get('name', '?')} "
            f"{self.server_info.get('version', '')} (protocol {self.protocol_version})"
        )

    async def bring_up(self, deadline: Deadline | None = None) -> list[ToolDef]:
        """initialize + tools/list back to back on this session, under one budget."""
        deadline = deadline or Deadline.after(self.spec.initialize_timeout + LIST_TOOLS_TIMEOUT)
        await self.initialize(deadline)
        try:
            return await self.list_tools(deadline)
        except BridgeError as e:
            self._degrade(e)
            raise

    async def close(self) -> None:
        """Close the session and its transport. Safe to call more than once."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        await self._transport.close()
        log.info(f"[{self.id}] Session closed")

    def _on_transport_closed(self, reason: str) -> None:
        if self.state in (SessionState.CLOSED, SessionState.DEGRADED):
            return
        self._degrade(TransportError(f"{self.id}: {reason}"))

    def _degrade(self, error: BridgeError) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.last_error = error
        if self.state is not SessionState.DEGRADED:
            log.warning(f"[{self.id}] Session degraded ({error.status}): {error}")
        self.state = SessionState.DEGRADED

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _check_usable(self) -> None:
        if self.state in (SessionState.DEGRADED, SessionState.CLOSED):
            raise TransportError(f"{self.id}: session is {self.state.value}")
        if self.state is not SessionState.READY:
            raise BridgeError(f"{self.id}: session is not initialized")

    async def _request(self, method: str, params: dict | None, deadline: Deadline) -> dict:
        if self.state in (SessionState.DEGRADED, SessionState.CLOSED):
            raise TransportError(f"{self.id}: session is {self.state.value}")
        try:
            async with asyncio.timeout(deadline.remaining()):
                await self._lock.acquire()
        except TimeoutError:
            raise DeadlineExceeded(f"{self.id}: {method} timed out waiting for the session") from None
        try:
            return await self._transport.send(method, params, timeout=deadline.remaining())
        except TransportError as e:
            self._degrade(e)
            raise
        finally:
            self._lock.release()

    async def list_tools(
        self, deadline: Deadline | None = None, *, refresh: bool = False
    ) -> list[ToolDef]:
        """Return the server's tool catalog, following pagination. Cached after the first call."""
        self._check_usable()
        if self.tools is not None and not refresh:
            return list(self.tools)

        deadline = deadline or Deadline.after(LIST_TOOLS_TIMEOUT)
        tools: list[ToolDef] = []
        cursor = None
        while True:
            result = await self._request("tools/list", {"cursor": cursor} if cursor else None, deadline)
            try:
                page = types.ListToolsResult.model_validate(result)
            except ValidationError as e:
                raise HandshakeError(f"{self.id}: malformed tools/list result: {e}") from e
            tools.extend(ToolDef.from_mcp(tool) for tool in page.tools)
            cursor = page.nextCursor
            if not cursor:
                break

        self.tools = tools
        log.info(f"[{self.id}] Discovered {len(tools)} tools: {[t.name for t in tools]}")
        return list(tools)

    async def call_tool(
        self, raw_name: str, arguments: dict, deadline: Deadline | None = None
    ) -> CallOutcome:
        self._check_usable()
        deadline = deadline or Deadline.after(CALL_TOOL_TIMEOUT)
        result = await self._request(
            "tools/call", {"name": raw_name, "arguments": arguments}, deadline
        )
        try:
            parsed = types.CallToolResult.model_validate(result)
        except ValidationError as e:
            raise ToolError(f"{self.id}: malformed tools/call result: {e}") from e
        return CallOutcome(
            text=render_content(parsed.content),
            is_error=bool(parsed.isError),
            structured=getattr(parsed, "structuredContent", None),
        )

    def status(self) -> dict:
        return {
            "id": self.id,
            "transport": self.spec.transport,
            "state": self.state.value,
            "server": self.server_info,
            "tools": len(self.tools or []),
            "last_error": (
                {"status": self.last_error.status, "message": str(self.last_error)}
                if self.last_error
                else None
            ),
            "stderr": self._transport.stderr_tail(),
        }
