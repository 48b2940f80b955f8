"""Tests for generation rebuilds: reload ordering, bad configs, history and shutdown."""

import asyncio
import json
import sys

import pytest

from chatops import supervisor as supervisor_module
from chatops.chat import ChatEvent, ChatHandler
from chatops.config import Config, ReloadConfig, load_config
from chatops.errors import ConfigError
from chatops.mcp_manager import MCPManager
from chatops.session import SessionState
from chatops.supervisor import Supervisor, reload_interval

from conftest import FAKE_SERVER, RecordingFrontend, ScriptedLLM, tool_call


def write_config(path, log_path, *server_ids, llm=None, tools="echo", server_env=None, **extra):
    servers = {
        sid: {
            "command": sys.executable,
            "args": [FAKE_SERVER],
            "env": {
                "FAKE_NAME": sid,
                "FAKE_TOOLS": tools,
                "FAKE_LOG": str(log_path),
                **(server_env or {}).get(sid, {}),
            },
        }
        for sid in server_ids
    }
    llm = {"provider": "ollama", **(llm or {})}
    path.write_text(json.dumps({"llm": llm, "mcpServers": servers, **extra}))


class Providers:
    """provider_factory that hands out ScriptedLLMs and can be told to fail."""

    def __init__(self):
        self.created: list[ScriptedLLM] = []
        self.fail_with: Exception | None = None

    def __call__(self, llm_config):
        if self.fail_with is not None:
            raise self.fail_with
        llm = ScriptedLLM()
        self.created.append(llm)
        return llm


@pytest.fixture
def managers(monkeypatch):
    """Every MCPManager the supervisor builds, in order."""
    built: list[MCPManager] = []

    class RecordingManager(MCPManager):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            built.append(self)

    monkeypatch.setattr(supervisor_module, "MCPManager", RecordingManager)
    return built


@pytest.fixture
def setup(tmp_path):
    config_path = tmp_path / "config.json"
    log_path = tmp_path / "methods.log"
    write_config(config_path, log_path, "a")
    providers = Providers()

    def make(**kwargs):
        return Supervisor(
            load_config(config_path),
            RecordingFrontend(),
            config_path,
            handle_signals=False,
            provider_factory=providers,
            **kwargs,
        )

    return make, config_path, log_path, providers


class TestReload:
    @pytest.mark.asyncio
    async def test_old_sessions_close_before_new_ones_start(self, setup):
        make, config_path, log_path, providers = setup
        sup = make()
        await sup.start()
        try:
            first = sup.generation
            assert first.manager.registry.names() == ["a_echo"]

            write_config(config_path, log_path, "b")
            assert await sup.reload("test") is True

            assert sup.generation.number == 2
            assert sup.generation.manager.registry.names() == ["b_echo"]
            assert all(s.state is SessionState.CLOSED for s in first.manager.sessions)
            assert providers.created[0].closed

            lines = log_path.read_text().splitlines()
            assert lines.index("a eof") < lines.index("b initialize")
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_unreadable_config_keeps_previous(self, setup):
        make, config_path, _, _ = setup
        sup = make()
        await sup.start()
        try:
            config_path.write_text("{not json")
            assert await sup.reload("test") is True
            assert sup.generation.number == 2
            assert sup.generation.manager.registry.names() == ["a_echo"]
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_unusable_config_falls_back(self, setup):
        make, config_path, log_path, providers = setup
        sup = make()
        await sup.start()
        try:
            write_config(config_path, log_path, "b", historyLimit=5)
            calls = 0

            def flaky(llm_config):
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise ConfigError("scripted: provider unavailable")
                return ScriptedLLM()

            sup._provider_factory = flaky
            assert await sup.reload("test") is True
            assert sup.generation.manager.registry.names() == ["a_echo"]
            assert sup.config.history_limit == 50
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_unreadable_prompt_file_starts_no_servers(self, setup, managers, tmp_path):
        make, config_path, log_path, providers = setup
        sup = make()
        await sup.start()
        try:
            write_config(
                config_path, log_path, "b", llm={"customPromptFile": str(tmp_path / "missing.txt")}
            )
            assert await sup.reload("test") is True
            assert sup.generation.manager.registry.names() == ["a_echo"]

            assert "b initialize" not in log_path.read_text().splitlines()
            retired = [m for m in managers if m is not sup.generation.manager]
            assert all(s.state is SessionState.CLOSED for m in retired for s in m.sessions)
        finally:
            await sup.stop()
        assert all(s.state is SessionState.CLOSED for m in managers for s in m.sessions)
        assert all(llm.closed for llm in providers.created)

    @pytest.mark.asyncio
    async def test_failed_build_releases_its_servers(self, setup, managers, monkeypatch):
        make, config_path, log_path, providers = setup
        sup = make()
        await sup.start()
        try:
            failures = []

            def chat_handler_failing_once(*args, **kwargs):
                if not failures:
                    failures.append(1)
                    raise ConfigError("scripted: chat handler rejected the configuration")
                return ChatHandler(*args, **kwargs)

            monkeypatch.setattr(supervisor_module, "ChatHandler", chat_handler_failing_once)
            write_config(config_path, log_path, "b")
            assert await sup.reload("test") is True
            assert sup.generation.manager.registry.names() == ["a_echo"]

            # initial, rejected, fallback
            assert len(managers) == 3
            rejected = managers[1]
            assert [s.id for s in rejected.sessions] == ["b"]
            assert all(s.state is SessionState.CLOSED for s in rejected.sessions)
            assert providers.created[1].closed
            assert "b eof" in log_path.read_text().splitlines()
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_wrongly_typed_config_keeps_previous(self, setup):
        make, config_path, log_path, _ = setup
        sup = make()
        await sup.start()
        try:
            write_config(config_path, log_path, "b", historyLimit="fifty")
            assert await sup.reload("test") is True
            assert sup.fatal_error is None
            assert sup.generation.number == 2
            assert sup.generation.manager.registry.names() == ["a_echo"]
            assert sup.config.history_limit == 50
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_history_survives_reload(self, setup):
        make, config_path, log_path, _ = setup
        sup = make()
        await sup.start()
        try:
            history = sup.generation.chat.history
            history.get("t1").add("user", "remember me")
            await sup.reload("test")
            assert sup.generation.chat.history is history

            write_config(config_path, log_path, "a", historyLimit=5)
            await sup.reload("test")
            assert sup.generation.chat.history is not history
            assert sup.generation.chat.history.limit == 5
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_request_reload_wakes_the_watcher(self, setup):
        make, *_ = setup
        sup = make()
        await sup.start()
        try:
            sup.request_reload("test")
            for _ in range(100):
                if sup.generation.number == 2:
                    break
                await asyncio.sleep(0.05)
            assert sup.generation.number == 2
        finally:
            await sup.stop()

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_fatal(self, setup):
        make, _, _, providers = setup
        failures = []
        sup = make(on_fatal=failures.append)
        await sup.start()
        try:
            providers.fail_with = RuntimeError("scripted: out of memory")
            sup.request_reload("test")
            for _ in range(100):
                if failures:
                    break
                await asyncio.sleep(0.05)
            assert isinstance(failures[0], RuntimeError)
            assert sup.fatal_error is failures[0]
        finally:
            await sup.stop()


class TestCrashedServer:
    @pytest.mark.asyncio
    async def test_crash_mid_call_then_reload(self, setup):
        make, config_path, log_path, providers = setup
        write_config(config_path, log_path, "a", tools="echo,crash")
        sup = make()
        await sup.start()
        try:
            generation = sup.generation
            (session,) = generation.manager.sessions
            llm = providers.created[0]
            llm.responses = [tool_call("a_crash"), "The tool server went away."]

            reply = await generation.chat.handle(ChatEvent("t1", "u1", "crash it"))
            assert reply == "The tool server went away."
            reprompt = llm.calls[1]["messages"][-1]["content"]
            assert "Tool a_crash failed (transport-error)" in reprompt

            assert session.state is SessionState.DEGRADED
            status = session.status()
            assert status["last_error"]["status"] == "transport-error"
            assert any("fatal: giving up" in line for line in status["stderr"])

            (again,) = await generation.dispatcher.dispatch(tool_call("a_echo", {"text": "hi"}))
            assert again.status == "transport-error"

            # The server now dies during every handshake; only b comes back.
            write_config(
                config_path,
                log_path,
                "a",
                "b",
                server_env={"a": {"FAKE_EXIT_AFTER_INIT": "1"}},
            )
            assert await sup.reload("test") is True
            registry = sup.generation.manager.registry
            assert [t["name"] for t in registry.describe_all()] == ["b_echo"]
            states = {s["id"]: s["state"] for s in sup.generation.manager.server_status()}
            assert states == {"a": "degraded", "b": "ready"}
        finally:
            await sup.stop()


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_closes_everything(self, setup):
        make, *_ = setup
        sup = make()
        await sup.start()
        generation = sup.generation
        await sup.stop()
        assert sup.generation is None
        assert all(s.state is SessionState.CLOSED for s in generation.manager.sessions)
        assert await sup.reload("late") is False
        assert not generation.chat.accepting


class TestInterval:
    def test_disabled(self):
        assert reload_interval(Config()) is None

    def test_enabled(self):
        assert reload_interval(Config(reload=ReloadConfig(enabled=True, interval=60))) == 60

    def test_below_minimum_disables_the_timer(self, caplog):
        config = Config(reload=ReloadConfig(enabled=True, interval=5))
        assert reload_interval(config) is None
        assert "below the minimum" in caplog.text
