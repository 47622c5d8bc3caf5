"""FastMCP server entry point for the MCP Review Engine."""

from __future__ import annotations

import contextvars
import json
import logging
import os
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP

from mcp_review_engine.db import engine_lifespan, user_config_dir

ENGINE_LOG_DIR_ENV_VAR = "ENGINE_LOG_DIR"
ENGINE_LOG_MAX_BYTES_ENV_VAR = "ENGINE_LOG_MAX_BYTES"
ENGINE_LOG_BACKUPS_ENV_VAR = "ENGINE_LOG_BACKUPS"
ENGINE_HOST_ENV_VAR = "ENGINE_HOST"
ENGINE_PORT_ENV_VAR = "ENGINE_PORT"
DEFAULT_ENGINE_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_ENGINE_LOG_BACKUPS = 5
DEFAULT_ENGINE_PORT = 8340

mcp = FastMCP(
    "mcp-review-engine",
    instructions=(
        "Tool orchestration engine for AI-assisted code review. "
        "Manages review sessions, runs multi-stage tool pipelines and streams progress."
    ),
    lifespan=engine_lifespan,
)

# ContextVar holding the caller identity for log lines.
# Default "engine" is used for internal/system actions.
caller_tag: contextvars.ContextVar[str] = contextvars.ContextVar("caller_tag", default="engine")

# Import tools to register them with @mcp.tool.
# This import MUST come AFTER mcp is created to avoid circular imports.
from mcp_review_engine import tools  # noqa: F401, E402
from mcp_review_engine.routes import register_run_routes  # noqa: E402

register_run_routes(mcp)


class _CallerFormatter(logging.Formatter):
    """Log formatter that injects the caller_tag ContextVar into each record."""

    def format(self, record: logging.LogRecord) -> str:
        record.caller_tag = caller_tag.get("engine")  # type: ignore[attr-defined]
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """Structured JSON formatter for engine logfile events."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "caller_tag": getattr(record, "caller_tag", caller_tag.get("engine")),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def _resolve_engine_log_dir() -> Path:
    override = os.environ.get(ENGINE_LOG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return user_config_dir() / "engine-logs"


def _read_positive_int_env(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def _configure_logging() -> None:
    """Configure concise engine logs with stream and structured rotating logfile handlers."""
    logger = logging.getLogger("mcp_review_engine")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    has_stream_handler = any(
        getattr(handler, "_review_engine_stream_handler", False)
        for handler in logger.handlers
    )
    if not has_stream_handler:
        handler = logging.StreamHandler()
        handler._review_engine_stream_handler = True  # type: ignore[attr-defined]
        handler.setLevel(logging.INFO)
        handler.setFormatter(
            _CallerFormatter(
                "%(asctime)s [%(caller_tag)s] %(message)s",
                "%H:%M:%S",
            )
        )
        logger.addHandler(handler)

    if not any(
        getattr(handler, "_review_engine_file_handler", False) for handler in logger.handlers
    ):
        log_dir = _resolve_engine_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_max_bytes = _read_positive_int_env(
            ENGINE_LOG_MAX_BYTES_ENV_VAR,
            DEFAULT_ENGINE_LOG_MAX_BYTES,
            1024,
        )
        log_backups = _read_positive_int_env(
            ENGINE_LOG_BACKUPS_ENV_VAR,
            DEFAULT_ENGINE_LOG_BACKUPS,
            1,
        )
        file_handler = RotatingFileHandler(
            log_dir / "engine.jsonl",
            maxBytes=log_max_bytes,
            backupCount=log_backups,
            encoding="utf-8",
        )
        file_handler._review_engine_file_handler = True  # type: ignore[attr-defined]
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(_JsonFormatter())
        logger.addHandler(file_handler)


# Ensure the engine logger is configured even when launched without calling main().
_configure_logging()


def main() -> None:
    """Run the engine over streamable HTTP.

    Set ENGINE_HOST / ENGINE_PORT to override the bind address
    (default 0.0.0.0:8340).

    Storage:
    - Default DB path is user-scoped config dir:
      Linux: ~/.config/mcp-review-engine/mcp_review_engine.sqlite3
      macOS: ~/Library/Application Support/mcp-review-engine/mcp_review_engine.sqlite3
      Windows: %APPDATA%/mcp-review-engine/mcp_review_engine.sqlite3
    - Set ENGINE_DB_PATH to override with an explicit SQLite file path.
    - Set ENGINE_CONFIG_PATH to point at the JSON config (``engine`` section).
    """
    _configure_logging()
    host = os.environ.get(ENGINE_HOST_ENV_VAR, "0.0.0.0")
    port = _read_positive_int_env(ENGINE_PORT_ENV_VAR, DEFAULT_ENGINE_PORT, 1)
    uvicorn_log_level = os.environ.get("ENGINE_UVICORN_LOG_LEVEL", "warning")
    mcp.run(
        transport="streamable-http",
        host=host,
        port=port,
        log_level=uvicorn_log_level,
        stateless_http=True,
    )


if __name__ == "__main__":
    main()
