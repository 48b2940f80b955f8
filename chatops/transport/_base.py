"""JSON-RPC framing shared by every transport: id matching, cancellation, events."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

from mcp import types
from pydantic import ValidationError

from ..errors import DeadlineExceeded, RPCError, TransportError

log = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 100
METHOD_NOT_FOUND = -32601

_CLOSED = object()


def _preview(raw: Any, limit: int = 200) -> str:
    text = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else str(raw)
    return text if len(text) <= limit else text[:limit] + "..."


class Transport(ABC):
    """One connection to one tool server.

    Subclasses provide ``open``, ``_write`` (put one frame on the wire) and
    ``_shutdown`` (release OS resources), and feed every received frame to
    ``_handle_frame``. When the peer goes away they call ``_mark_closed``;
    pending requests then fail with TransportError.
    """

    kind = ""

    def __init__(self, name: str, *, event_queue_size: int = EVENT_QUEUE_SIZE):
        self.name = name
        self._ids = itertools.count(1)
        # request id -> future resolved by the reader
        self._pending: dict[int, asyncio.Future] = {}
        self._events: asyncio.Queue = asyncio.Queue(maxsize=event_queue_size)
        self._closed = False
        self._shut_down = False
        self._close_reason: str | None = None
        self._close_callbacks: list[Callable[[str], None]] = []
        self._background: set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def stderr_tail(self, lines: int = 50) -> list[str]:
        """Recent diagnostic output from the server, where the transport has any."""
        return []

    def add_close_callback(self, callback: Callable[[str], None]) -> None:
        self._close_callbacks.append(callback)

    @abstractmethod
    async def open(self, timeout: float) -> None:
        """Start the process or open the connection."""

    @abstractmethod
    async def _write(self, frame: dict) -> None:
        """Put one frame on the wire. Raises TransportError."""

    @abstractmethod
    async def _shutdown(self) -> None:
        """Release the process, pipes or sockets."""

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def send(
        self, method: str, params: dict | None = None, *, timeout: float
    ) -> dict:
        """Send a request and wait at most ``timeout`` seconds for its response."""
        if self._closed:
            raise TransportError(f"{self.name}: transport is closed ({self._close_reason})")

        request_id = next(self._ids)
        frame: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            frame["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        log.debug(f"[{self.name}] -> {method} (id={request_id})")
        try:
            return await asyncio.wait_for(self._roundtrip(frame, future), timeout)
        except asyncio.TimeoutError:
            self._abandon(request_id, "timeout")
            raise DeadlineExceeded(
                f"{self.name}: {method} timed out after {timeout:.1f}s"
            ) from None
        except asyncio.CancelledError:
            self._abandon(request_id, "cancelled")
            raise
        finally:
            self._pending.pop(request_id, None)

    async def _roundtrip(self, frame: dict, future: asyncio.Future) -> dict:
        await self._write(frame)
        return await future

    async def notify(self, method: str, params: dict | None = None) -> None:
        if self._closed:
            raise TransportError(f"{self.name}: transport is closed ({self._close_reason})")
        frame: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            frame["params"] = params
        await self._write(frame)

    def _abandon(self, request_id: int, reason: str) -> None:
        """Stop waiting for ``request_id`` and tell the server, without waiting for it."""
        log.info(f"[{self.name}] Abandoning request {request_id} ({reason})")
        if not self._closed:
            self._spawn(self._send_cancelled(request_id, reason))

    async def _send_cancelled(self, request_id: int, reason: str) -> None:
        try:
            await self.notify(
                "notifications/cancelled", {"requestId": request_id, "reason": reason}
            )
        except TransportError as e:
            log.debug(f"[{self.name}] Could not send cancellation for {request_id}: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def _handle_frame(self, raw: str | bytes | dict | types.JSONRPCMessage) -> None:
        """Route one received frame. Malformed frames are logged and dropped."""
        try:
            if isinstance(raw, types.JSONRPCMessage):
                message = raw
            elif isinstance(raw, dict):
                message = types.JSONRPCMessage.model_validate(raw)
            else:
                message = types.JSONRPCMessage.model_validate_json(raw)
        except ValidationError as e:
            log.warning(
                f"[{self.name}] Discarding malformed frame ({e.error_count()} errors): "
                f"{_preview(raw)}"
            )
            return

        msg = message.root
        if isinstance(msg, types.JSONRPCResponse):
            self._resolve(msg.id, result=msg.result)
        elif isinstance(msg, types.JSONRPCError):
            self._resolve(msg.id, error=msg.error)
        elif isinstance(msg, types.JSONRPCRequest):
            self._on_server_request(msg)
        else:
            self._put_event(msg.model_dump(by_alias=True, mode="json", exclude_none=True))

    def _resolve(self, request_id, *, result: dict | None = None, error=None) -> None:
        future = self._pending.get(request_id)
        if future is None and isinstance(request_id, str) and request_id.isdigit():
            future = self._pending.get(int(request_id))
        if future is None or future.done():
            log.debug(f"[{self.name}] Discarding response for unknown request id {request_id!r}")
            return
        if error is not None:
            future.set_exception(RPCError(error.code, error.message, error.data))
        else:
            future.set_result(result or {})

    def _on_server_request(self, msg: types.JSONRPCRequest) -> None:
        if msg.method == "ping":
            reply = {"jsonrpc": "2.0", "id": msg.id, "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": msg.id,
                "error": {
                    "code": METHOD_NOT_FOUND,
                    "message": f"Method not supported by client: {msg.method}",
                },
            }
            self._put_event(msg.model_dump(by_alias=True, mode="json", exclude_none=True))
        self._spawn(self._reply(reply))

    async def _reply(self, frame: dict) -> None:
        try:
            await self._write(frame)
        except TransportError as e:
            log.debug(f"[{self.name}] Could not answer server request: {e}")

    def _put_event(self, item) -> None:
        if self._events.full():
            dropped = self._events.get_nowait()
            if dropped is not _CLOSED:
                log.warning(
                    f"[{self.name}] Event queue full, dropping {dropped.get('method')}"
                )
        self._events.put_nowait(item)

    async def events(self) -> AsyncIterator[dict]:
        """Server-initiated frames, until the transport closes."""
        while True:
            item = await self._events.get()
            if item is _CLOSED:
                # Leave the marker for any other consumer.
                self._put_event(_CLOSED)
                return
            yield item

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _mark_closed(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        log.info(f"[{self.name}] Transport closed: {reason}")

        error = TransportError(f"{self.name}: {reason}")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._put_event(_CLOSED)

        for callback in self._close_callbacks:
            try:
                callback(reason)
            except Exception:
                log.exception(f"[{self.name}] Close callback failed")

    async def close(self) -> None:
        """Close the transport. Safe to call more than once."""
        if self._shut_down:
            return
        self._shut_down = True
        self._mark_closed("closed by client")
        try:
            await self._shutdown()
        finally:
            for task in list(self._background):
                task.cancel()

    @staticmethod
    def encode(frame: dict) -> bytes:
        return (json.dumps(frame, ensure_ascii=False) + "\n").encode("utf-8")
