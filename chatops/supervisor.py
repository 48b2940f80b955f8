"""Reload supervisor: rebuilds the tool runtime on SIGHUP, on request, or on a timer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .chat import ChatFrontend, ChatHandler
from .config import MIN_RELOAD_INTERVAL, Config, load_config
from .dispatch import Dispatcher
from .errors import ConfigError
from .history import HistoryStore
from .llm import LLMProvider, create_provider
from .mcp_manager import MCPManager
from .prompts import load_preamble

log = logging.getLogger(__name__)


@dataclass
class Generation:
    """Everything built from one configuration load."""

    number: int
    config: Config
    manager: MCPManager
    llm: LLMProvider
    dispatcher: Dispatcher
    chat: ChatHandler


def reload_interval(config: Config) -> float | None:
    """Seconds between timed reloads, or None when the timer is off."""
    if not config.reload.enabled:
        return None
    if config.reload.interval < MIN_RELOAD_INTERVAL:
        log.error(
            f"Reload interval {config.reload.interval:g}s is below the minimum of "
            f"{MIN_RELOAD_INTERVAL:g}s; periodic reload disabled"
        )
        return None
    return config.reload.interval


class Supervisor:
    def __init__(
        self,
        config: Config,
        frontend: ChatFrontend,
        config_path: str | Path | None = None,
        *,
        handle_signals: bool = True,
        on_fatal: Callable[[BaseException], None] | None = None,
        provider_factory: Callable[..., LLMProvider] = create_provider,
    ):
        self.config = config
        self.generation: Generation | None = None
        self.fatal_error: BaseException | None = None
        self._config_path = config_path
        self._frontend = frontend
        self._handle_signals = handle_signals
        self._on_fatal = on_fatal
        self._provider_factory = provider_factory
        self._count = 0
        self._reload_lock = asyncio.Lock()
        self._reload_requested = asyncio.Event()
        self._reload_reason = ""
        self._watcher: asyncio.Task | None = None
        self._signals_installed = False
        self._stopped = False

    # --- Generations ---

    async def _build(self, config: Config, history: HistoryStore | None = None) -> Generation:
        # Everything that can reject the configuration runs before any server starts.
        preamble = load_preamble(config.llm)
        llm = self._provider_factory(config.llm)
        manager = MCPManager(config.servers)
        try:
            await manager.start()
            dispatcher = Dispatcher(manager.registry, config.tool_timeout)
            if history is not None and history.limit != config.history_limit:
                log.info("historyLimit changed; starting with empty conversation history")
                history = None
            chat = ChatHandler(llm, dispatcher, self._frontend, config, history, preamble)
        except BaseException:
            await manager.shutdown()
            await llm.close()
            raise
        self._count += 1
        log.info(f"Runtime generation {self._count} started ({len(manager.registry)} tools)")
        return Generation(self._count, config, manager, llm, dispatcher, chat)

    async def _retire(self, generation: Generation):
        await generation.chat.stop(generation.config.shutdown_grace)
        await generation.manager.shutdown()
        await generation.llm.close()
        log.info(f"Runtime generation {generation.number} stopped")

    # --- Lifecycle ---

    async def start(self):
        """Build the first generation. Raises ConfigError if that is impossible."""
        self.generation = await self._build(self.config)
        self._watcher = asyncio.create_task(self._watch())
        if self._handle_signals:
            self._install_signal_handler()

    def _install_signal_handler(self):
        sighup = getattr(signal, "SIGHUP", None)
        if sighup is None:
            return
        try:
            asyncio.get_running_loop().add_signal_handler(sighup, self.request_reload, "SIGHUP")
        except (NotImplementedError, RuntimeError, ValueError) as e:
            log.warning(f"Cannot install SIGHUP reload handler: {e}")
            return
        self._signals_installed = True

    def request_reload(self, reason: str = "request"):
        """Ask the watcher to reload. Safe to call from a signal handler."""
        self._reload_reason = reason
        self._reload_requested.set()

    async def _watch(self):
        while True:
            interval = reload_interval(self.config)
            try:
                await asyncio.wait_for(self._reload_requested.wait(), interval)
                reason = self._reload_reason
            except asyncio.TimeoutError:
                reason = "timer"
            self._reload_requested.clear()
            try:
                await self.reload(reason)
            except Exception as e:
                log.exception("Supervisor failed while reloading")
                self.fatal_error = e
                if self._on_fatal:
                    self._on_fatal(e)
                return

    async def reload(self, reason: str = "request") -> bool:
        """Replace the running generation. Returns False once the supervisor is stopped."""
        async with self._reload_lock:
            if self._stopped:
                return False
            log.info(f"Reloading runtime ({reason})")
            config = self._load_or_keep()

            old = self.generation
            history = old.chat.history if old else None
            # Every old session is closed before any new one starts.
            if old is not None:
                await self._retire(old)

            try:
                self.generation = await self._build(config, history)
            except ConfigError as e:
                if config is self.config:
                    raise
                log.error(f"New configuration is unusable, keeping the previous one: {e}")
                config = self.config
                self.generation = await self._build(config, history)
            self.config = config
            return True

    def _load_or_keep(self) -> Config:
        if self._config_path is None:
            return self.config
        try:
            return load_config(self._config_path)
        except ConfigError as e:
            log.error(f"Failed to reload configuration, keeping the previous one: {e}")
            return self.config

    async def stop(self):
        """Shut down for good: no rebuild."""
        self._stopped = True
        if self._signals_installed:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
            self._signals_installed = False
        if self._watcher is not None:
            self._watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watcher
            self._watcher = None
        async with self._reload_lock:
            if self.generation is not None:
                await self._retire(self.generation)
                self.generation = None
