"""Streamable HTTP transport: every frame is a POST; responses come back as JSON or SSE."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import httpx
from mcp.client.streamable_http import streamablehttp_client

from ..errors import TransportError
from ._remote import HTTP_TIMEOUT, SSE_READ_TIMEOUT, RemoteTransport, _request_id

SESSION_HEADER = "Mcp-Session-Id"


class StreamableHTTPTransport(RemoteTransport):
    kind = "http"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._get_session_id: Callable[[], str | None] | None = None

    @property
    def session_id(self) -> str | None:
        return self._get_session_id() if self._get_session_id is not None else None

    def _connect(self):
        return streamablehttp_client(
            self._url,
            headers=self._headers,
            timeout=timedelta(seconds=HTTP_TIMEOUT),
            sse_read_timeout=timedelta(seconds=SSE_READ_TIMEOUT),
            httpx_client_factory=self._http_client,
        )

    def _on_connected(self, streams: tuple) -> None:
        self._get_session_id = streams[2]

    async def _check_response(self, response: httpx.Response) -> None:
        request = response.request
        if request.method == "POST" and response.status_code == 404 and SESSION_HEADER in request.headers:
            self._mark_closed("server session expired")
            return
        if request.method == "POST" and response.status_code == 202:
            # 202 carries no body, so a request answered this way never gets a response.
            request_id = _request_id(request)
            if request_id is not None:
                self._fail(
                    request_id,
                    TransportError(f"{self.name}: server sent no response for request {request_id}"),
                )
            return
        await super()._check_response(response)
