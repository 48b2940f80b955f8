"""FastAPI application: lifespan and routes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from .auth import init_auth
from .auth import router as auth_router
from .frontend import WebSocketFrontend
from .config import Config, load_config
from .routes.chat import router as chat_router
from .routes.tools import router as tools_router
from .routes.websocket import router as ws_router
from .supervisor import Supervisor

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# --- Global state ---

supervisor: Supervisor | None = None

_config: Config | None = None
_config_path: str | Path | None = None
_handle_signals = True
_on_fatal: Callable[[BaseException], None] | None = None


def configure_logging(level: str):
    """Configure root logging once, at process start, from the config's logLevel."""
    numeric = logging.getLevelName(level.upper())
    logging.basicConfig(level=numeric if isinstance(numeric, int) else logging.INFO, format=LOG_FORMAT)
    if not isinstance(numeric, int):
        log.warning(f"Unknown logLevel '{level}', using info")


def configure(
    config: Config | None = None,
    config_path: str | Path | None = None,
    *,
    handle_signals: bool = True,
    on_fatal: Callable[[BaseException], None] | None = None,
):
    """Set what the lifespan starts with. Without a config it is loaded at startup."""
    global _config, _config_path, _handle_signals, _on_fatal
    _config = config
    _config_path = config_path
    _handle_signals = handle_signals
    _on_fatal = on_fatal


# --- App lifecycle ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    global supervisor

    config = _config or load_config(_config_path)
    init_auth(config.auth)

    supervisor = Supervisor(
        config,
        WebSocketFrontend(),
        _config_path,
        handle_signals=_handle_signals,
        on_fatal=_on_fatal,
    )
    await supervisor.start()
    log.info(f"MCP tools: {supervisor.generation.manager.registry.names()}")

    yield

    # Shutdown
    await supervisor.stop()
    supervisor = None


app = FastAPI(lifespan=lifespan)
app.include_router(auth_router)
app.include_router(chat_router)
app.include_router(tools_router)
app.include_router(ws_router)
