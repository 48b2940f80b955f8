"""Dispatcher: finds tool calls in LLM output and runs them through the registry."""

from __future__ import annotations

import itertools
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from .deadline import Deadline
from .errors import BridgeError, ToolError
from .llm import LLMResponse, LLMToolCall
from .registry import ToolRegistry
from .session import CALL_TOOL_TIMEOUT

log = logging.getLogger(__name__)

STATUS_OK = "ok"
RESULT_STATUSES = {STATUS_OK, "tool-error", "transport-error", "timeout", "not-found", "denied"}

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_call_ids = itertools.count(1)


def next_call_id() -> str:
    return f"call_{next(_call_ids)}"


@dataclass
class ToolCall:
    name: str
    arguments: dict = field(default_factory=dict)
    id: str = field(default_factory=next_call_id)
    source: str = "native"
    # Set when the arguments could not be decoded; the call is not dispatched.
    error: str | None = None


@dataclass
class ToolResult:
    call_id: str
    name: str
    status: str
    payload: str
    structured: Any = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


# ----------------------------------------------------------------------
# Detection
# ----------------------------------------------------------------------


def _decode_arguments(raw: Any) -> tuple[dict, str | None]:
    if raw is None or raw == "":
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            return {}, f"arguments are not valid JSON: {e}"
        if isinstance(value, dict):
            return value, None
        raw = value
    return {}, f"arguments must be a JSON object, got {type(raw).__name__}"


def _call_from_object(obj: Any) -> ToolCall | None:
    if not isinstance(obj, dict):
        return None
    name = obj.get("tool", obj.get("name"))
    if not isinstance(name, str) or not name:
        return None
    if "args" in obj:
        raw = obj["args"]
    elif "arguments" in obj:
        raw = obj["arguments"]
    else:
        return None
    arguments, error = _decode_arguments(raw)
    return ToolCall(name, arguments, source="text", error=error)


def detect_tool_calls(content: str, native: list[LLMToolCall] | None = None) -> list[ToolCall]:
    """Return the tool calls an LLM response asks for, in order.

    Native function calls win. Otherwise fenced JSON blocks of the form
    ``{"tool": ..., "args": {...}}`` are used, and failing that a response
    that is nothing but such an object.
    """
    if native:
        calls = []
        for tool_call in native:
            arguments, error = _decode_arguments(tool_call.arguments)
            calls.append(ToolCall(tool_call.name, arguments, source="native", error=error))
        return calls

    content = content or ""
    calls = []
    for match in _FENCED_JSON.finditer(content):
        try:
            obj = json.loads(match.group(1))
        except json.JSONDecodeError:
            log.debug(f"Ignoring fenced block that is not JSON: {match.group(1)[:100]}")
            continue
        call = _call_from_object(obj)
        if call is not None:
            calls.append(call)
    if calls:
        return calls

    stripped = content.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        try:
            call = _call_from_object(json.loads(stripped))
        except json.JSONDecodeError:
            call = None
        if call is not None:
            return [call]
    return []


# ----------------------------------------------------------------------
# Argument coercion
# ----------------------------------------------------------------------

_NO_MATCH = object()


def _matches(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    if expected == "null":
        return value is None
    return True


def _convert(value: Any, expected: str) -> Any:
    if isinstance(value, bool):
        return _NO_MATCH
    if expected == "string" and isinstance(value, (int, float)):
        return str(value)
    if expected == "integer" and isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if expected == "boolean" and text.lower() in ("true", "false"):
            return text.lower() == "true"
        if expected in ("integer", "number"):
            try:
                return int(text)
            except ValueError:
                pass
            try:
                number = float(text)
            except ValueError:
                return _NO_MATCH
            if expected == "number":
                return number
            if number.is_integer():
                return int(number)
    return _NO_MATCH


def coerce_arguments(arguments: dict, schema: dict) -> dict:
    """Best-effort fix-up of LLM arguments against a tool's input schema.

    Raises ToolError for a missing required field or a value that cannot be
    made to fit the declared type.
    """
    # Servers publish whatever schema they like; malformed parts are ignored.
    schema = schema if isinstance(schema, dict) else {}
    required = schema.get("required")
    if not isinstance(required, list):
        required = []
    missing = [key for key in required if isinstance(key, str) and key not in arguments]
    if missing:
        raise ToolError(f"missing required argument(s): {', '.join(missing)}")

    properties = schema.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    coerced = dict(arguments)
    for key, value in arguments.items():
        prop = properties.get(key)
        if not isinstance(prop, dict) or "type" not in prop:
            continue
        declared = prop["type"] if isinstance(prop["type"], list) else [prop["type"]]
        expected = [t for t in declared if isinstance(t, str)]
        if not expected or any(_matches(value, t) for t in expected):
            continue
        for t in expected:
            converted = _convert(value, t)
            if converted is not _NO_MATCH:
                coerced[key] = converted
                break
        else:
            raise ToolError(
                f"argument '{key}' should be {' or '.join(expected)}, got {type(value).__name__}"
            )
    return coerced


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------


class Dispatcher:
    def __init__(self, registry: ToolRegistry, call_timeout: float = CALL_TOOL_TIMEOUT):
        self.registry = registry
        self.call_timeout = call_timeout

    def detect(self, response: LLMResponse) -> list[ToolCall]:
        return detect_tool_calls(response.content, response.tool_calls)

    async def dispatch(
        self, response: LLMResponse, deadline: Deadline | None = None
    ) -> list[ToolResult]:
        """Run every tool call in the response, one after another."""
        results = []
        for call in self.detect(response):
            results.append(await self.execute(call, deadline))
        return results

    async def execute(self, call: ToolCall, deadline: Deadline | None = None) -> ToolResult:
        started = time.monotonic()
        call_deadline = (
            deadline.shorten(self.call_timeout) if deadline else Deadline.after(self.call_timeout)
        )
        name = call.name
        try:
            if call.error:
                raise ToolError(call.error)
            entry = self.registry.lookup(call.name)
            name = entry.qualified_name
            arguments = coerce_arguments(call.arguments, entry.tool.input_schema)
            session = self.registry.session_for(entry)
            log.info(f"Tool call: {name}({arguments})")
            outcome = await session.call_tool(entry.raw_name, arguments, call_deadline)
        except BridgeError as e:
            status = e.status if e.status in RESULT_STATUSES else "tool-error"
            elapsed = time.monotonic() - started
            log.warning(f"Tool call {name} failed after {elapsed:.2f}s ({status}): {e}")
            return ToolResult(call.id, name, status, str(e), elapsed=elapsed)
        except Exception as e:
            elapsed = time.monotonic() - started
            log.exception(f"Tool call {name} failed unexpectedly after {elapsed:.2f}s")
            return ToolResult(
                call.id, name, "tool-error", f"{type(e).__name__}: {e}", elapsed=elapsed
            )

        elapsed = time.monotonic() - started
        status = "tool-error" if outcome.is_error else STATUS_OK
        log.info(f"Tool call {name} finished in {elapsed:.2f}s ({status})")
        return ToolResult(call.id, name, status, outcome.text, outcome.structured, elapsed)


def render_reprompt(user_text: str, results: list[ToolResult]) -> str:
    """The follow-up message that hands tool output back to the LLM."""
    blocks = []
    for result in results:
        if result.ok:
            header = f"Tool {result.name} returned:"
        else:
            header = f"Tool {result.name} failed ({result.status}):"
        blocks.append(f"{header}\n```\n{result.payload}\n```")

    if len(results) == 1:
        intro = "I used a tool and received the following result:"
    else:
        intro = f"I used {len(results)} tools and received the following results:"
    return (
        f"The user asked: '{user_text}'\n\n"
        f"{intro}\n" + "\n\n".join(blocks) + "\n"
        "Please formulate a concise and helpful natural language response to the user "
        "based *only* on the user's original question and the tool results provided. "
        "If a tool failed, say so or try a different tool."
    )
