"""MCP client manager: connects to configured MCP servers and exposes their tools."""

import asyncio
import logging

from .config import ServerSpec
from .errors import BridgeError
from .registry import ToolRegistry
from .session import ServerSession, SessionState
from .transport import create_transport

log = logging.getLogger(__name__)


class MCPManager:
    """One generation of tool servers.

    Every session and the registry are created together in ``start`` and
    released together in ``shutdown``.
    """

    def __init__(self, specs: list[ServerSpec]):
        self._specs = list(specs)
        # server id -> session, in configuration order
        self._sessions: dict[str, ServerSession] = {}
        self.registry = ToolRegistry()
        self._closed = False

    @property
    def sessions(self) -> list[ServerSession]:
        return list(self._sessions.values())

    def session(self, server_id: str) -> ServerSession | None:
        return self._sessions.get(server_id)

    async def start(self):
        """Connect to all enabled MCP servers and register the tools of those that came up."""
        for spec in self._specs:
            if spec.disabled:
                log.info(f"MCP server '{spec.id}' is disabled, skipping")
                continue
            self._sessions[spec.id] = ServerSession(spec, create_transport(spec))

        await asyncio.gather(*(self._bring_up(s) for s in self._sessions.values()))

        # Registration follows config order so collisions resolve the same way every time.
        for session in self._sessions.values():
            if session.state is SessionState.READY:
                self.registry.register(session)
        self.registry.freeze()

        ready = sum(1 for s in self._sessions.values() if s.state is SessionState.READY)
        log.info(
            f"MCP servers ready: {ready}/{len(self._sessions)}; "
            f"tools: {self.registry.names()}"
        )

    async def _bring_up(self, session: ServerSession):
        try:
            await session.bring_up()
        except BridgeError as e:
            log.error(f"MCP server '{session.id}' unavailable ({e.status}): {e}")
        except Exception:
            log.exception(f"Failed to connect to MCP server '{session.id}'")

    def server_status(self) -> list[dict]:
        status = []
        for spec in self._specs:
            session = self._sessions.get(spec.id)
            if session is None:
                status.append({"id": spec.id, "transport": spec.transport, "state": "disabled"})
            else:
                status.append(session.status())
        return status

    async def shutdown(self):
        """Close all MCP server connections."""
        if self._closed:
            return
        self._closed = True
        results = await asyncio.gather(
            *(s.close() for s in self._sessions.values()), return_exceptions=True
        )
        for session, result in zip(self._sessions.values(), results):
            if isinstance(result, BaseException):
                log.error(f"Error closing MCP server '{session.id}': {result!r}")
        log.info(f"Closed {len(self._sessions)} MCP server sessions")
