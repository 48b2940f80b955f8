"""Configuration loading: dataclasses, JSON/YAML files and ``${VAR}`` expansion."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

log = logging.getLogger(__name__)

PROJECT_DIR = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_DIR / "config.json"

TRANSPORTS = ("stdio", "sse", "http")
_TRANSPORT_ALIASES = {"streamable-http": "http", "streamable_http": "http"}

PROVIDER_OPENAI = "openai"
PROVIDER_OLLAMA = "ollama"
PROVIDERS = (PROVIDER_OPENAI, PROVIDER_OLLAMA)

DEFAULT_INITIALIZE_TIMEOUT = 5.0
MIN_RELOAD_INTERVAL = 10.0

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(frozen=True)
class ServerSpec:
    id: str
    transport: str
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    disabled: bool = False
    initialize_timeout: float = DEFAULT_INITIALIZE_TIMEOUT
    allow_list: tuple[str, ...] = ()
    block_list: tuple[str, ...] = ()


@dataclass
class LLMProviderConfig:
    model: str = "gpt-4o"
    api_key: str = ""
    base_url: str | None = None
    temperature: float | None = 0.7
    max_tokens: int | None = None
    timeout: float = 120.0


def _default_providers() -> dict[str, LLMProviderConfig]:
    return {
        PROVIDER_OPENAI: LLMProviderConfig(model="gpt-4o"),
        PROVIDER_OLLAMA: LLMProviderConfig(
            model="llama3", base_url="http://localhost:11434/v1", api_key="ollama"
        ),
    }


@dataclass
class LLMConfig:
    provider: str = PROVIDER_OPENAI
    use_native_tools: bool = True
    custom_prompt: str = ""
    custom_prompt_file: str = ""
    replace_tool_prompt: bool = False
    providers: dict[str, LLMProviderConfig] = field(default_factory=_default_providers)

    @property
    def active(self) -> LLMProviderConfig:
        return self.providers[self.provider]


@dataclass
class ReloadConfig:
    enabled: bool = False
    interval: float = 600.0


@dataclass
class AuthConfig:
    enabled: bool = False
    api_key: str = ""


@dataclass
class Config:
    llm: LLMConfig = field(default_factory=LLMConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    reload: ReloadConfig = field(default_factory=ReloadConfig)
    servers: list[ServerSpec] = field(default_factory=list)
    history_limit: int = 50
    max_tool_rounds: int = 4
    tool_timeout: float = 60.0
    turn_timeout: float = 300.0
    shutdown_grace: float = 10.0
    log_level: str = "info"


def expand_env(value: str) -> str:
    """Replace ``${VAR}`` with the environment value; unset variables are left as-is."""

    def _sub(match: re.Match) -> str:
        return os.environ.get(match.group(1), match.group(0))

    return _ENV_PATTERN.sub(_sub, value)


def parse_duration(value: Any) -> float:
    """Parse ``30``, ``"30s"``, ``"10m"``, ``"1h30m"`` or ``"500ms"`` into seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"Invalid duration: {value!r}")
    return total


def _str_list(raw: Any, what: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(x, str) for x in raw):
        raise ConfigError(f"{what} must be a list of strings")
    return tuple(raw)


def _object(raw: Any, what: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{what} must be an object")
    return raw


def _int(raw: Any, what: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise ConfigError(f"{what} must be an integer")
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{what} must be an integer, got {raw!r}") from None


def _number(raw: Any, what: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigError(f"{what} must be a number")
    return float(raw)


def _str_map(raw: Any, what: str) -> dict[str, str]:
    raw = _object(raw, what)
    return {str(k): expand_env(str(v)) for k, v in raw.items()}


def _parse_server(server_id: str, raw: dict) -> ServerSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"MCP server '{server_id}': entry must be an object")
    command = raw.get("command") or None
    url = raw.get("url") or raw.get("endpoint") or None
    if command is None and url is None:
        raise ConfigError(f"MCP server '{server_id}': either command or url is required")

    transport = raw.get("transport") or ("stdio" if command else "sse")
    transport = _TRANSPORT_ALIASES.get(transport, transport)
    if transport not in TRANSPORTS:
        raise ConfigError(f"MCP server '{server_id}': unknown transport '{transport}'")
    if transport == "stdio" and command is None:
        raise ConfigError(f"MCP server '{server_id}': stdio transport requires a command")
    if transport != "stdio" and url is None:
        raise ConfigError(f"MCP server '{server_id}': {transport} transport requires a url")

    timeout = raw.get("initializeTimeoutSeconds")
    if timeout is None:
        timeout = DEFAULT_INITIALIZE_TIMEOUT
    elif isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError(
            f"MCP server '{server_id}': initializeTimeoutSeconds must be a positive number"
        )

    # Filters may be nested under "tools" or given flat on the server entry.
    tools = _object(raw.get("tools"), f"MCP server '{server_id}': tools")
    allow = tools.get("allowList", raw.get("allowList"))
    block = tools.get("blockList", raw.get("blockList"))

    return ServerSpec(
        id=server_id,
        transport=transport,
        command=command,
        args=_str_list(raw.get("args"), f"MCP server '{server_id}': args"),
        env=_str_map(raw.get("env"), f"MCP server '{server_id}': env"),
        cwd=raw.get("cwd"),
        url=expand_env(url) if url else None,
        headers=_str_map(
            raw.get("httpHeaders", raw.get("headers")),
            f"MCP server '{server_id}': httpHeaders",
        ),
        disabled=bool(raw.get("disabled", False)),
        initialize_timeout=float(timeout),
        allow_list=_str_list(allow, f"MCP server '{server_id}': allowList"),
        block_list=_str_list(block, f"MCP server '{server_id}': blockList"),
    )


def _parse_provider(name: str, raw: Any, base: LLMProviderConfig) -> LLMProviderConfig:
    what = f"LLM provider '{name}'"
    pconf = _object(raw, what)
    base_url = pconf.get("baseUrl", base.base_url)
    temperature = pconf.get("temperature", base.temperature)
    max_tokens = pconf.get("maxTokens") or base.max_tokens
    return LLMProviderConfig(
        model=str(pconf.get("model", base.model)),
        api_key=expand_env(str(pconf.get("apiKey", base.api_key) or "")),
        base_url=expand_env(str(base_url)) if base_url else None,
        temperature=_number(temperature, f"{what}: temperature") if temperature is not None else None,
        max_tokens=_int(max_tokens, f"{what}: maxTokens") if max_tokens is not None else None,
        timeout=parse_duration(pconf.get("timeoutSeconds", base.timeout)),
    )


def _parse_llm(raw: dict) -> LLMConfig:
    raw = _object(raw, "llm")
    providers = _default_providers()
    for name, pconf in _object(raw.get("providers"), "llm.providers").items():
        providers[name] = _parse_provider(name, pconf, providers.get(name, LLMProviderConfig()))
    return LLMConfig(
        provider=str(raw.get("provider", PROVIDER_OPENAI)),
        use_native_tools=bool(raw.get("useNativeTools", True)),
        custom_prompt=str(raw.get("customPrompt") or ""),
        custom_prompt_file=str(raw.get("customPromptFile") or ""),
        replace_tool_prompt=bool(raw.get("replaceToolPrompt", False)),
        providers=providers,
    )


def apply_env_overrides(llm: LLMConfig, environ=None) -> LLMConfig:
    """Let LLM_PROVIDER, CUSTOM_PROMPT and the per-provider variables win over the file."""
    environ = os.environ if environ is None else environ
    if environ.get("LLM_PROVIDER"):
        llm.provider = environ["LLM_PROVIDER"]
    if environ.get("CUSTOM_PROMPT"):
        llm.custom_prompt = environ["CUSTOM_PROMPT"]

    openai = llm.providers.get(PROVIDER_OPENAI)
    if openai is not None:
        if environ.get("OPENAI_API_KEY"):
            openai.api_key = environ["OPENAI_API_KEY"]
        if environ.get("OPENAI_MODEL"):
            openai.model = environ["OPENAI_MODEL"]

    ollama = llm.providers.get(PROVIDER_OLLAMA)
    if ollama is not None:
        if environ.get("OLLAMA_BASE_URL"):
            ollama.base_url = environ["OLLAMA_BASE_URL"]
        if environ.get("OLLAMA_MODEL"):
            ollama.model = environ["OLLAMA_MODEL"]
    return llm


def _check_llm(llm: LLMConfig, *, require_key: bool = True):
    if llm.provider not in PROVIDERS:
        raise ConfigError(f"Unknown LLM provider '{llm.provider}'")
    active = llm.active
    if require_key and llm.provider == PROVIDER_OPENAI and not active.base_url:
        if not active.api_key or active.api_key.startswith("${"):
            raise ConfigError("OPENAI_API_KEY is not set for the openai provider")


_TOP_LEVEL_KEYS = {
    "$schema",
    "version",
    "llm",
    "auth",
    "reload",
    "reloadEnabled",
    "reloadInterval",
    "mcpServers",
    "historyLimit",
    "maxToolRounds",
    "toolTimeoutSeconds",
    "turnTimeoutSeconds",
    "shutdownGraceSeconds",
    "logLevel",
}


def parse_config(raw: dict, environ=None) -> Config:
    """Build a validated Config from an already-decoded document.

    Environment overrides for the LLM section are applied before validation.
    """
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be an object")

    for key in raw:
        if key not in _TOP_LEVEL_KEYS:
            log.warning(f"Ignoring unknown configuration key '{key}'")

    servers_raw = raw.get("mcpServers") or {}
    if not isinstance(servers_raw, dict):
        raise ConfigError("mcpServers must be an object keyed by server id")
    servers = [_parse_server(str(sid), sconf) for sid, sconf in servers_raw.items()]

    # A file holding nothing but mcpServers is the legacy server list.
    legacy = set(raw) - {"$schema"} == {"mcpServers"}
    llm = apply_env_overrides(LLMConfig() if legacy else _parse_llm(raw.get("llm")), environ)
    _check_llm(llm, require_key=not legacy)

    auth_raw = _object(raw.get("auth"), "auth")
    auth = AuthConfig(
        enabled=bool(auth_raw.get("enabled", False)),
        api_key=expand_env(str(auth_raw.get("apiKey") or "")),
    )
    if auth.enabled and not auth.api_key:
        raise ConfigError("auth is enabled but no apiKey is configured")

    # Reload settings may be nested under "reload" or given flat.
    reload_raw = _object(raw.get("reload"), "reload")
    reload = ReloadConfig(
        enabled=bool(reload_raw.get("enabled", raw.get("reloadEnabled", False))),
        interval=parse_duration(
            reload_raw.get("interval", raw.get("reloadInterval", ReloadConfig.interval))
        ),
    )

    config = Config(
        llm=llm,
        auth=auth,
        reload=reload,
        servers=servers,
        history_limit=_int(raw.get("historyLimit", 50), "historyLimit"),
        max_tool_rounds=_int(raw.get("maxToolRounds", 4), "maxToolRounds"),
        tool_timeout=parse_duration(raw.get("toolTimeoutSeconds", 60)),
        turn_timeout=parse_duration(raw.get("turnTimeoutSeconds", 300)),
        shutdown_grace=parse_duration(raw.get("shutdownGraceSeconds", 10)),
        log_level=str(raw.get("logLevel", "info")).lower(),
    )
    if config.history_limit < 1:
        raise ConfigError("historyLimit must be at least 1")
    if config.max_tool_rounds < 0:
        raise ConfigError("maxToolRounds must not be negative")
    return config


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from a JSON or YAML file. Raises ConfigError."""
    path = Path(path) if path else CONFIG_PATH
    if not path.exists():
        raise ConfigError(f"Config file does not exist: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    try:
        if path.suffix in (".yaml", ".yml"):
            raw = yaml.safe_load(text) or {}
        else:
            raw = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    try:
        config = parse_config(raw)
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
    log.info(f"Loaded configuration from {path} ({len(config.servers)} MCP servers)")
    return config
