"""Transports over the MCP SDK's HTTP clients.

The SDK client contexts run anyio task groups, so they must be entered and
exited by the same task. Each transport gets an owner task that holds the
context open, pumps the SDK's read stream into ``_handle_frame`` and leaves
the context when the transport is closed. Id matching, deadlines and
cancellation stay in ``Transport``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import abstractmethod
from contextlib import AbstractAsyncContextManager

import anyio
import httpx
from mcp import types
from mcp.shared.message import SessionMessage

from ..errors import DeadlineExceeded, TransportError
from ._base import Transport

log = logging.getLogger(__name__)

HTTP_TIMEOUT = 30.0
SSE_READ_TIMEOUT = 3600.0
_CLOSE_WAIT = 5.0


def _root_cause(error: BaseException) -> BaseException:
    while isinstance(error, BaseExceptionGroup) and error.exceptions:
        error = error.exceptions[0]
    return error


def _request_id(request: httpx.Request):
    """Id of the JSON-RPC request carried by a POST, or None for notifications and replies."""
    try:
        frame = json.loads(request.content)
    except (httpx.RequestNotRead, ValueError):
        return None
    if isinstance(frame, dict) and "method" in frame:
        return frame.get("id")
    return None


class RemoteTransport(Transport):
    def __init__(
        self,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name)
        self._url = url
        self._headers = dict(headers or {})
        self._http_transport = http_transport
        self._write_stream = None
        self._ready: asyncio.Future | None = None
        self._stop: asyncio.Event | None = None
        self._owner: asyncio.Task | None = None

    @abstractmethod
    def _connect(self) -> AbstractAsyncContextManager[tuple]:
        """The SDK client context; it yields ``(read_stream, write_stream, ...)``."""

    def _on_connected(self, streams: tuple) -> None:
        pass

    def _http_client(self, headers=None, timeout=None, auth=None) -> httpx.AsyncClient:
        """httpx client factory handed to the SDK."""
        return httpx.AsyncClient(
            headers=headers,
            timeout=timeout if timeout is not None else httpx.Timeout(HTTP_TIMEOUT),
            auth=auth,
            follow_redirects=True,
            transport=self._http_transport,
            event_hooks={"response": [self._check_response]},
        )

    async def _check_response(self, response: httpx.Response) -> None:
        """Fail a pending request as soon as its POST is refused."""
        request = response.request
        if request.method != "POST" or response.status_code < 400:
            return
        request_id = _request_id(request)
        if request_id is not None:
            self._fail(
                request_id,
                TransportError(f"{self.name}: POST to {request.url} returned HTTP {response.status_code}"),
            )

    def _fail(self, request_id, error: TransportError) -> None:
        future = self._pending.get(request_id)
        if future is not None and not future.done():
            future.set_exception(error)

    def _fail_pending(self, error: TransportError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)

    # ------------------------------------------------------------------
    # Owner task
    # ------------------------------------------------------------------

    async def open(self, timeout: float) -> None:
        self._ready = asyncio.get_running_loop().create_future()
        self._stop = asyncio.Event()
        self._owner = asyncio.create_task(self._run())
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except asyncio.TimeoutError:
            self._owner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._owner
            self._mark_closed("connect timed out")
            raise DeadlineExceeded(
                f"{self.name}: could not connect to {self._url} within {timeout:.1f}s"
            ) from None
        log.info(f"[{self.name}] Connected to {self.kind} endpoint {self._url}")

    async def _run(self) -> None:
        reason = "connection closed by server"
        try:
            async with self._connect() as streams:
                read_stream, self._write_stream = streams[0], streams[1]
                self._on_connected(streams)
                if not self._ready.done():
                    self._ready.set_result(None)
                pump = asyncio.create_task(self._pump(read_stream))
                stop = asyncio.create_task(self._stop.wait())
                await asyncio.wait({pump, stop}, return_when=asyncio.FIRST_COMPLETED)
                for task in (pump, stop):
                    task.cancel()
                await asyncio.gather(pump, stop, return_exceptions=True)
                if self._stop.is_set():
                    reason = self._close_reason or "closed by client"
        except Exception as e:
            cause = _root_cause(e)
            reason = f"connection failed: {type(cause).__name__}: {cause}"
            log.debug(f"[{self.name}] SDK client exited", exc_info=e)
        finally:
            self._write_stream = None

        if not self._ready.done():
            self._ready.set_exception(TransportError(f"{self.name}: {reason}"))
        self._mark_closed(reason)

    async def _pump(self, read_stream) -> None:
        async for item in read_stream:
            if isinstance(item, Exception):
                # The SDK does not say which request an error belongs to.
                log.warning(f"[{self.name}] Error from {self.kind} client: {item}")
                self._fail_pending(TransportError(f"{self.name}: {item}"))
                continue
            self._handle_frame(item.message)

    async def _write(self, frame: dict) -> None:
        stream = self._write_stream
        if stream is None:
            raise TransportError(f"{self.name}: not connected")
        message = SessionMessage(types.JSONRPCMessage.model_validate(frame))
        try:
            await stream.send(message)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            raise TransportError(f"{self.name}: connection is closed") from e

    def _mark_closed(self, reason: str) -> None:
        super()._mark_closed(reason)
        if self._stop is not None:
            self._stop.set()

    async def _shutdown(self) -> None:
        owner = self._owner
        if owner is None or owner.done():
            return
        self._stop.set()
        try:
            await asyncio.wait_for(asyncio.shield(owner), _CLOSE_WAIT)
        except asyncio.TimeoutError:
            owner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await owner
