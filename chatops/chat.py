"""Chat handler: runs user turns: LLM calls, tool dispatch, re-prompts."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from .deadline import Deadline
from .dispatch import Dispatcher, ToolResult, render_reprompt
from .errors import LLMError
from .history import HistoryStore
from .llm import LLMProvider, LLMResponse
from .prompts import build_system_prompt, history_to_messages, load_preamble

if TYPE_CHECKING:
    from .config import Config

log = logging.getLogger(__name__)

THINKING_MESSAGE = "Thinking..."
EMPTY_RESPONSE = "(LLM returned an empty response)"
TROUBLE_MESSAGE = "I'm having trouble processing that request. Please try again."
RESTARTING_MESSAGE = (
    "I'm restarting to pick up a new configuration. Please send your message again in a moment."
)


@dataclass
class ChatEvent:
    thread_id: str
    user_id: str
    text: str


class ChatFrontend(Protocol):
    async def send(self, thread_id: str, text: str) -> None: ...

    async def send_status(self, thread_id: str, text: str) -> None: ...


def _describe_calls(response: LLMResponse) -> str:
    """Text form of an assistant message that only carried native tool calls."""
    if response.content.strip():
        return response.content
    calls = [{"tool": c.name, "args": c.arguments} for c in response.tool_calls]
    return json.dumps(calls if len(calls) != 1 else calls[0], ensure_ascii=False)


def _history_line(result: ToolResult) -> str:
    return f"{result.name} ({result.status}): {result.payload}"


class ChatHandler:
    def __init__(
        self,
        llm: LLMProvider,
        dispatcher: Dispatcher,
        frontend: ChatFrontend,
        config: Config,
        history: HistoryStore | None = None,
        preamble: str | None = None,
    ):
        self._llm = llm
        self._dispatcher = dispatcher
        self._frontend = frontend
        self._llm_config = config.llm
        self._preamble = preamble if preamble is not None else load_preamble(config.llm)
        self._max_tool_rounds = config.max_tool_rounds
        self._turn_timeout = config.turn_timeout
        self.history = history if history is not None else HistoryStore(config.history_limit)

        # One turn at a time per thread; threads run in parallel. A lock lives
        # only while some turn on its thread is running or waiting.
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._turns: set[asyncio.Task] = set()
        self._accepting = True
        self._cancelling = False

    @property
    def accepting(self) -> bool:
        return self._accepting

    @contextlib.asynccontextmanager
    async def _thread_turn(self, thread_id: str):
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        self._lock_users[thread_id] = self._lock_users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[thread_id] -= 1
            if not self._lock_users[thread_id]:
                del self._lock_users[thread_id]
                del self._locks[thread_id]

    # --- Turns ---

    async def handle(self, event: ChatEvent) -> str:
        """Run one user turn and deliver the reply to the front-end. Returns the reply."""
        if not self._accepting:
            await self._frontend.send(event.thread_id, RESTARTING_MESSAGE)
            return RESTARTING_MESSAGE

        task = asyncio.current_task()
        self._turns.add(task)
        try:
            async with self._thread_turn(event.thread_id):
                reply = await self._run_turn(event)
                await self._frontend.send(event.thread_id, reply)
                return reply
        except asyncio.CancelledError:
            if not self._cancelling:
                raise
            task.uncancel()
            log.info(f"Turn on thread {event.thread_id} cancelled for restart")
            await self._frontend.send(event.thread_id, RESTARTING_MESSAGE)
            return RESTARTING_MESSAGE
        finally:
            self._turns.discard(task)

    async def _complete(
        self, messages: list[dict], tools: list[dict] | None, deadline: Deadline
    ) -> LLMResponse:
        remaining = deadline.remaining()
        if remaining <= 0:
            raise LLMError("turn deadline exceeded before the LLM call")
        options = self._llm.default_options()
        options.timeout = min(options.timeout, remaining)
        return await self._llm.complete(messages, tools, options)

    async def _run_turn(self, event: ChatEvent) -> str:
        deadline = Deadline.after(self._turn_timeout)
        history = self.history.get(event.thread_id)
        await self._frontend.send_status(event.thread_id, THINKING_MESSAGE)

        log.info(f"[{event.thread_id}] Turn from {event.user_id}: {event.text[:200]}")
        prior = history.entries()
        history.add("user", event.text)

        registry = self._dispatcher.registry
        system = build_system_prompt(self._llm_config, self._preamble, registry.describe_all())
        tools = registry.openai_tools() if self._llm_config.use_native_tools else None
        messages = [
            {"role": "system", "content": system},
            *history_to_messages(prior),
            {"role": "user", "content": event.text},
        ]

        try:
            response = await self._complete(messages, tools, deadline)
        except LLMError as e:
            log.error(f"[{event.thread_id}] LLM error: {e}")
            return f"Sorry, I encountered an error: {e}"

        rounds = 0
        last_content = ""
        while True:
            calls = self._dispatcher.detect(response)
            if not calls:
                break
            if response.tool_calls and response.content.strip():
                last_content = response.content.strip()
            if rounds >= self._max_tool_rounds:
                log.warning(
                    f"[{event.thread_id}] Still asking for tools after {rounds} rounds, giving up"
                )
                reply = last_content or TROUBLE_MESSAGE
                history.add("assistant", reply)
                return reply
            rounds += 1

            results = [await self._dispatcher.execute(call, deadline) for call in calls]
            assistant_text = _describe_calls(response)
            history.add("assistant", assistant_text)
            for result in results:
                history.add("tool", _history_line(result))

            messages.append({"role": "assistant", "content": assistant_text})
            messages.append({"role": "user", "content": render_reprompt(event.text, results)})
            try:
                response = await self._complete(messages, tools, deadline)
            except LLMError as e:
                log.error(f"[{event.thread_id}] LLM error while re-prompting: {e}")
                return f"Sorry, I encountered an error: {e}"

        reply = response.content.strip() or EMPTY_RESPONSE
        history.add("assistant", reply)
        return reply

    def clear_history(self, thread_id: str) -> bool:
        return self.history.clear(thread_id)

    # --- Shutdown ---

    async def stop(self, grace: float) -> None:
        """Stop taking turns; give running turns ``grace`` seconds, then cancel them."""
        self._accepting = False
        pending = {task for task in self._turns if not task.done()}
        if not pending:
            return
        log.info(f"Waiting up to {grace:.0f}s for {len(pending)} in-flight turns")
        _, pending = await asyncio.wait(pending, timeout=grace)
        if not pending:
            return
        log.warning(f"Cancelling {len(pending)} turns still running after {grace:.0f}s")
        self._cancelling = True
        for task in pending:
            task.cancel()
        await asyncio.wait(pending, timeout=grace)
