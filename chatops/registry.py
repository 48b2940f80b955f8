"""Tool registry: one flat namespace over every ready server's catalog."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import BridgeError, ToolDenied, ToolNotFound
from .session import ServerSession, SessionState, ToolDef

log = logging.getLogger(__name__)


def qualify(server_id: str, raw_name: str) -> str:
    return f"{server_id}_{raw_name}"


@dataclass(frozen=True)
class RegisteredTool:
    qualified_name: str
    server_id: str
    tool: ToolDef

    @property
    def raw_name(self) -> str:
        return self.tool.name


class ToolRegistry:
    def __init__(self):
        # qualified name -> tool, in registration order
        self._tools: dict[str, RegisteredTool] = {}
        # raw name -> every registered tool with that raw name
        self._by_raw: dict[str, list[RegisteredTool]] = {}
        # qualified or raw name -> server that filtered it out
        self._denied: dict[str, str] = {}
        self._sessions: dict[str, ServerSession] = {}
        self._frozen = False

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    @property
    def frozen(self) -> bool:
        return self._frozen

    def names(self) -> list[str]:
        return list(self._tools)

    def freeze(self) -> None:
        self._frozen = True

    def register(self, session: ServerSession) -> list[RegisteredTool]:
        """Add a ready session's (filtered) catalog. Returns what was registered."""
        if self._frozen:
            raise BridgeError("tool registry is frozen")
        if session.state is not SessionState.READY or session.tools is None:
            log.warning(f"[{session.id}] Not registering tools: session is {session.state.value}")
            return []
        if session.id in self._sessions:
            raise BridgeError(f"server '{session.id}' is already registered")

        allow = set(session.spec.allow_list)
        block = set(session.spec.block_list)
        added = []
        for tool in session.tools:
            qualified = qualify(session.id, tool.name)
            if (allow and tool.name not in allow) or tool.name in block:
                self._denied.setdefault(qualified, session.id)
                self._denied.setdefault(tool.name, session.id)
                log.info(f"[{session.id}] Tool filtered by policy: {tool.name}")
                continue
            if qualified in self._tools:
                log.warning(
                    f"[{session.id}] Skipping '{tool.name}': qualified name {qualified} "
                    f"already taken by server '{self._tools[qualified].server_id}'"
                )
                continue

            others = self._by_raw.setdefault(tool.name, [])
            if others:
                log.warning(
                    f"Tool '{tool.name}' from '{session.id}' is also provided by "
                    f"{[o.server_id for o in others]}; registered as {qualified}"
                )
            entry = RegisteredTool(qualified, session.id, tool)
            self._tools[qualified] = entry
            others.append(entry)
            added.append(entry)

        self._sessions[session.id] = session
        log.info(f"[{session.id}] Registered {len(added)} tools")
        return added

    def lookup(self, name: str) -> RegisteredTool:
        """Resolve a qualified name, or a bare raw name that only one server provides."""
        entry = self._tools.get(name)
        if entry is not None:
            return entry

        candidates = self._by_raw.get(name, [])
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            raise ToolNotFound(
                f"tool name '{name}' is ambiguous; use one of "
                f"{[c.qualified_name for c in candidates]}"
            )
        if name in self._denied:
            raise ToolDenied(f"tool '{name}' is not allowed on server '{self._denied[name]}'")
        raise ToolNotFound(f"unknown tool '{name}'")

    def session_for(self, tool: RegisteredTool) -> ServerSession:
        session = self._sessions.get(tool.server_id)
        if session is None:
            raise ToolNotFound(f"server '{tool.server_id}' is not registered")
        return session

    @property
    def sessions(self) -> list[ServerSession]:
        return list(self._sessions.values())

    def describe_all(self) -> list[dict]:
        return [
            {
                "name": entry.qualified_name,
                "description": entry.tool.description,
                "input_schema": entry.tool.input_schema,
            }
            for entry in self._tools.values()
        ]

    def openai_tools(self) -> list[dict]:
        """Return all tools in OpenAI function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["input_schema"],
                },
            }
            for tool in self.describe_all()
        ]
