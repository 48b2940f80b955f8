"""Tests for the stdio transport against tests/fake_server.py."""

import asyncio
import sys
import time

import pytest

from chatops.errors import DeadlineExceeded, RPCError, TransportError
from chatops.transport import StdioTransport

from conftest import FAKE_SERVER

INIT = {"protocolVersion": "2024-11-05", "capabilities": {}, "clientInfo": {"name": "t", "version": "0"}}


def make_transport(**env):
    return StdioTransport(
        "fake", sys.executable, [FAKE_SERVER], {f"FAKE_{k.upper()}": str(v) for k, v in env.items()}
    )


class TestStdioTransport:
    @pytest.mark.asyncio
    async def test_request_response(self):
        transport = make_transport()
        await transport.open(5)
        try:
            result = await transport.send("initialize", INIT, timeout=5)
            assert result["serverInfo"]["name"] == "fake"
            assert transport.pending_count == 0
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        transport = make_transport()
        await transport.open(5)
        try:
            with pytest.raises(RPCError) as exc:
                await transport.send("no/such/method", timeout=5)
            assert exc.value.code == -32601
            assert exc.value.status == "tool-error"
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_timeout_sends_cancellation(self, tmp_path):
        log_path = tmp_path / "methods.log"
        transport = make_transport(log=log_path)
        await transport.open(5)
        try:
            started = time.monotonic()
            with pytest.raises(DeadlineExceeded):
                await transport.send(
                    "tools/call", {"name": "sleep", "arguments": {"seconds": 5}}, timeout=0.5
                )
            assert time.monotonic() - started < 0.6
            assert transport.pending_count == 0

            # The transport keeps working after a timeout.
            result = await transport.send(
                "tools/call", {"name": "read_file", "arguments": {"path": "/x"}}, timeout=5
            )
            assert result["content"][0]["text"] == "hello"
            await asyncio.sleep(0.2)
            assert "notifications/cancelled" in log_path.read_text()
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self):
        transport = make_transport(noise=1)
        await transport.open(5)
        try:
            result = await transport.send("initialize", INIT, timeout=5)
            assert result["serverInfo"]["name"] == "fake"
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_process_exit_fails_pending_and_closes(self):
        transport = make_transport(exit_after_init=1)
        reasons = []
        transport.add_close_callback(reasons.append)
        await transport.open(5)
        try:
            await transport.send("initialize", INIT, timeout=5)
            await transport.notify("notifications/initialized")
            for _ in range(50):
                if transport.closed:
                    break
                await asyncio.sleep(0.1)
            assert transport.closed
            assert reasons and "exited" in reasons[0]
            with pytest.raises(TransportError):
                await transport.send("tools/list", timeout=5)
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_events_end_when_closed(self):
        transport = make_transport()
        await transport.open(5)
        await transport.close()
        events = [event async for event in transport.events()]
        assert events == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        transport = make_transport()
        await transport.open(5)
        await transport.close()
        await transport.close()
        assert transport.closed

    @pytest.mark.asyncio
    async def test_missing_command(self):
        transport = StdioTransport("ghost", "/definitely/not/a/command")
        with pytest.raises(TransportError):
            await transport.open(5)
        assert transport.closed
