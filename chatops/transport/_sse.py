"""Legacy HTTP+SSE transport: one long-lived GET stream, frames POSTed to the announced endpoint."""

from __future__ import annotations

from mcp.client.sse import sse_client

from ._remote import HTTP_TIMEOUT, SSE_READ_TIMEOUT, RemoteTransport


class SSETransport(RemoteTransport):
    kind = "sse"

    def _connect(self):
        return sse_client(
            self._url,
            headers=self._headers,
            timeout=HTTP_TIMEOUT,
            sse_read_timeout=SSE_READ_TIMEOUT,
            httpx_client_factory=self._http_client,
        )
