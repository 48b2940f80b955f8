"""Child-process transport: one JSON-RPC frame per stdout line."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections import deque

from ..errors import DeadlineExceeded, TransportError
from ._base import Transport, _preview

log = logging.getLogger(__name__)

STDIO_LINE_LIMIT = 16 * 1024 * 1024
_STDERR_MAX_LINES = 200
_TERMINATE_WAIT = 2.0


class StdioTransport(Transport):
    kind = "stdio"

    def __init__(
        self,
        name: str,
        command: str,
        args: tuple[str, ...] | list[str] = (),
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ):
        super().__init__(name)
        self._command = command
        self._args = list(args)
        # Merge custom env vars with current environment so PATH etc. are preserved
        self._env = {**os.environ, **env} if env else None
        self._cwd = cwd
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_lines: deque[str] = deque(maxlen=_STDERR_MAX_LINES)
        self._reader: asyncio.Task | None = None
        self._stderr_reader: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def open(self, timeout: float) -> None:
        try:
            self._process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    self._command,
                    *self._args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=self._env,
                    cwd=self._cwd,
                    limit=STDIO_LINE_LIMIT,
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            raise DeadlineExceeded(f"{self.name}: starting '{self._command}' timed out") from None
        except OSError as e:
            self._mark_closed(f"failed to start: {e}")
            raise TransportError(f"{self.name}: failed to start '{self._command}': {e}") from e

        log.info(f"[{self.name}] Started MCP server: {self._command} (pid={self._process.pid})")
        self._reader = asyncio.create_task(self._read_stdout())
        self._stderr_reader = asyncio.create_task(self._read_stderr())

    async def _read_stdout(self) -> None:
        stdout = self._process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError as e:
                # Over-long line; the stream reader has already discarded it.
                log.warning(f"[{self.name}] Discarding oversized frame: {e}")
                continue
            except (ConnectionError, OSError) as e:
                self._mark_closed(f"stdout read failed: {e}")
                return
            if not line:
                break
            line = line.strip()
            if line:
                self._handle_frame(line)

        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._process.wait(), 1.0)
        code = self._process.returncode
        if code is None:
            self._mark_closed("server closed stdout")
            return
        if code != 0 and not self._shut_down:
            # Let stderr drain so the tail explains the exit.
            await asyncio.wait({self._stderr_reader}, timeout=0.5)
            tail = "\n".join(self.stderr_tail(10))
            if tail:
                log.warning(f"[{self.name}] Server exited with code {code}; stderr:\n{tail}")
        self._mark_closed(f"server process exited (code {code})")

    async def _read_stderr(self) -> None:
        stderr = self._process.stderr
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                continue
            except (ConnectionError, OSError):
                return
            if not line:
                return
            text = line.decode("utf-8", "replace").rstrip()
            self._stderr_lines.append(text)
            log.debug(f"[{self.name}] stderr: {_preview(text)}")

    def stderr_tail(self, lines: int = 50) -> list[str]:
        """Return the most recent stderr lines from the server process."""
        return list(self._stderr_lines)[-lines:]

    async def _write(self, frame: dict) -> None:
        stdin = self._process.stdin if self._process else None
        if stdin is None or stdin.is_closing():
            raise TransportError(f"{self.name}: server stdin is closed")
        try:
            stdin.write(self.encode(frame))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._mark_closed(f"write failed: {e}")
            raise TransportError(f"{self.name}: write failed: {e}") from e

    async def _shutdown(self) -> None:
        process = self._process
        if process is None:
            return
        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), _TERMINATE_WAIT)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), _TERMINATE_WAIT)
                except asyncio.TimeoutError:
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

        for task in (self._reader, self._stderr_reader):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        log.info(f"[{self.name}] MCP server process stopped (code {process.returncode})")
