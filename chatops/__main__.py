"""Command line entry point: ``python -m chatops``."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from . import server
from .config import CONFIG_PATH, load_config
from .errors import ConfigError

log = logging.getLogger("chatops")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="chatops", description="Chat front-end for LLM tool use over MCP servers"
    )
    parser.add_argument(
        "-c", "--config", default=str(CONFIG_PATH), help="JSON or YAML config file"
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, format=server.LOG_FORMAT)
        log.error(f"Configuration error: {e}")
        return 1
    server.configure_logging(config.log_level)

    uv = uvicorn.Server(
        uvicorn.Config(
            server.app,
            host=args.host,
            port=args.port,
            log_level=config.log_level if config.log_level in uvicorn.config.LOG_LEVELS else "info",
            log_config=None,
        )
    )

    failures: list[BaseException] = []

    def stop_on_fatal(error: BaseException):
        log.error(f"Shutting down after supervisor failure: {error}")
        failures.append(error)
        uv.should_exit = True

    server.configure(config, args.config, on_fatal=stop_on_fatal)
    uv.run()

    return 1 if failures or not uv.started else 0


if __name__ == "__main__":
    sys.exit(main())
