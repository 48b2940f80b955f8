"""Shared fixtures: a real stdio fake server, a scripted LLM and a recording front-end."""

import sys
from pathlib import Path

import pytest

from chatops.config import Config, LLMConfig, ServerSpec
from chatops.llm import CompletionOptions, LLMResponse, LLMToolCall

FAKE_SERVER = str(Path(__file__).parent / "fake_server.py")


def fake_spec(server_id="fs", *, allow=(), block=(), disabled=False, timeout=5.0, **env):
    """ServerSpec that runs tests/fake_server.py; keyword args become FAKE_* env vars."""
    return ServerSpec(
        id=server_id,
        transport="stdio",
        command=sys.executable,
        args=(FAKE_SERVER,),
        env={f"FAKE_{k.upper()}": str(v) for k, v in {"name": server_id, **env}.items()},
        disabled=disabled,
        initialize_timeout=timeout,
        allow_list=tuple(allow),
        block_list=tuple(block),
    )


def tool_call(name, arguments=None, call_id="call_llm_1"):
    return LLMResponse(content="", tool_calls=[LLMToolCall(call_id, name, arguments or {})])


class ScriptedLLM:
    """LLMProvider that replays canned responses and records what it was sent."""

    name = "scripted"

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []
        self.closed = False

    def default_options(self):
        return CompletionOptions(model="scripted", timeout=30.0)

    async def complete(self, messages, tools=None, options=None):
        self.calls.append({"messages": list(messages), "tools": tools, "options": options})
        if not self.responses:
            return LLMResponse(content="done")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, str):
            return LLMResponse(content=response)
        return response

    async def close(self):
        self.closed = True


class RecordingFrontend:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.statuses: list[tuple[str, str]] = []

    async def send(self, thread_id, text):
        self.sent.append((thread_id, text))

    async def send_status(self, thread_id, text):
        self.statuses.append((thread_id, text))


def make_config(*servers, **overrides):
    overrides.setdefault("llm", LLMConfig())
    return Config(servers=list(servers), **overrides)


@pytest.fixture
def frontend():
    return RecordingFrontend()


@pytest.fixture(autouse=True)
def clean_llm_env(monkeypatch):
    """The LLM variables of the developer's shell would override test configs."""
    for name in (
        "LLM_PROVIDER",
        "CUSTOM_PROMPT",
        "OPENAI_API_KEY",
        "OPENAI_MODEL",
        "OLLAMA_BASE_URL",
        "OLLAMA_MODEL",
    ):
        monkeypatch.delenv(name, raising=False)
