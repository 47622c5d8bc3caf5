"""Database connection, schema management, and lifespan for the MCP Review Engine."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite
from fastmcp import FastMCP

from mcp_review_engine.audit import record_event
from mcp_review_engine.builtin_tools import build_default_registry
from mcp_review_engine.config_schema import EngineConfig, load_engine_config
from mcp_review_engine.executor import ToolExecutor
from mcp_review_engine.models import AuditEventType, EnhancedReviewResult
from mcp_review_engine.pipeline import Orchestrator, StageFactory
from mcp_review_engine.registry import ToolRegistry
from mcp_review_engine.responder import AIResponder, HttpAIResponder
from mcp_review_engine.routes import set_app_context
from mcp_review_engine.sessions import SessionManager
from mcp_review_engine.streamer import UpdateStreamer

DB_FILENAME = "mcp_review_engine.sqlite3"
DB_CONFIG_DIRNAME = "mcp-review-engine"
CONFIG_FILENAME = "mcp-review-engine.json"
DB_PATH_ENV_VAR = "ENGINE_DB_PATH"
CONFIG_PATH_ENV_VAR = "ENGINE_CONFIG_PATH"
logger = logging.getLogger("mcp_review_engine")

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS audit_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id  TEXT,
    event_type  TEXT NOT NULL,
    actor       TEXT,
    metadata    TEXT,
    created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_audit_subject ON audit_events(subject_id);
CREATE INDEX IF NOT EXISTS idx_audit_type ON audit_events(event_type);

CREATE TABLE IF NOT EXISTS review_results (
    run_id      TEXT PRIMARY KEY,
    session_id  TEXT NOT NULL,
    success     INTEGER NOT NULL,
    error_code  TEXT,
    payload     TEXT NOT NULL,
    created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_results_session ON review_results(session_id);
"""


async def ensure_schema(db: aiosqlite.Connection) -> None:
    """Create tables and indexes if they don't exist."""
    await db.executescript(SCHEMA_SQL)


async def _rollback_quietly(db: aiosqlite.Connection) -> None:
    with suppress(Exception):
        await db.execute("ROLLBACK")


@dataclass
class SqliteResultStore:
    """Composed results and lifecycle audit events in the engine database.

    Writes are serialized by ``write_lock`` and wrapped in BEGIN IMMEDIATE.
    """

    db: aiosqlite.Connection
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def save(self, result: EnhancedReviewResult) -> None:
        async with self.write_lock:
            await self.db.execute("BEGIN IMMEDIATE")
            try:
                await self.db.execute(
                    """INSERT OR REPLACE INTO review_results
                       (run_id, session_id, success, error_code, payload)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        result.run_id,
                        result.session_id,
                        int(result.success),
                        result.error_code,
                        result.model_dump_json(),
                    ),
                )
                await self.db.execute("COMMIT")
            except Exception:
                await _rollback_quietly(self.db)
                raise

    async def load(self, run_id: str) -> EnhancedReviewResult | None:
        cursor = await self.db.execute(
            "SELECT payload FROM review_results WHERE run_id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return EnhancedReviewResult.model_validate_json(row["payload"])

    async def record(
        self,
        subject_id: str,
        event_type: AuditEventType,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        async with self.write_lock:
            await self.db.execute("BEGIN IMMEDIATE")
            try:
                await record_event(self.db, subject_id, event_type, metadata=metadata)
                await self.db.execute("COMMIT")
            except Exception:
                await _rollback_quietly(self.db)
                raise

    async def audit_trail(self, subject_id: str) -> list[dict[str, Any]]:
        cursor = await self.db.execute(
            """SELECT event_type, actor, metadata, created_at
               FROM audit_events
               WHERE subject_id = ?
               ORDER BY id""",
            (subject_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "event_type": row["event_type"],
                "actor": row["actor"],
                "metadata": json.loads(row["metadata"]) if row["metadata"] else None,
                "created_at": row["created_at"],
            }
            for row in rows
        ]


@dataclass
class AppContext:
    """Application context shared by MCP tools and HTTP routes."""

    db: aiosqlite.Connection
    config: EngineConfig
    registry: ToolRegistry
    sessions: SessionManager
    executor: ToolExecutor
    orchestrator: Orchestrator
    store: SqliteResultStore
    streamer: UpdateStreamer


def build_app_context(
    db: aiosqlite.Connection,
    config: EngineConfig,
    *,
    registry: ToolRegistry | None = None,
    responder: AIResponder | None = None,
    stage_factory: StageFactory | None = None,
) -> AppContext:
    """Wire registry, sessions, executor, streamer and orchestrator together."""
    registry = registry if registry is not None else build_default_registry(config)
    if responder is None:
        responder = HttpAIResponder(
            config.ai_endpoint,
            config.ai_api_key,
            timeout=config.ai_timeout_seconds,
        )
    sessions = SessionManager(
        registry,
        idle_timeout_seconds=config.session_idle_timeout_seconds,
        closed_retention_seconds=config.closed_session_retention_seconds,
    )
    executor = ToolExecutor(registry, default_timeout=config.tool_timeout_seconds)
    streamer = UpdateStreamer()
    store = SqliteResultStore(db)
    extra: dict[str, Any] = {}
    if stage_factory is not None:
        extra["stage_factory"] = stage_factory
    orchestrator = Orchestrator(
        sessions,
        executor,
        responder,
        streamer=streamer,
        store=store,
        max_tool_call_depth=config.max_tool_call_depth,
        tool_timeout=config.tool_timeout_seconds,
        ai_timeout=config.ai_timeout_seconds,
        run_timeout=config.run_timeout_seconds,
        critical_notification_channel=config.critical_notification_channel,
        **extra,
    )
    return AppContext(
        db=db,
        config=config,
        registry=registry,
        sessions=sessions,
        executor=executor,
        orchestrator=orchestrator,
        store=store,
        streamer=streamer,
    )


def user_config_dir() -> Path:
    """Resolve a cross-platform user config directory for engine state."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home).expanduser() / DB_CONFIG_DIRNAME

    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata).expanduser() / DB_CONFIG_DIRNAME
        return Path.home() / "AppData" / "Roaming" / DB_CONFIG_DIRNAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / DB_CONFIG_DIRNAME

    return Path.home() / ".config" / DB_CONFIG_DIRNAME


def resolve_db_path() -> Path:
    """Resolve the engine database path.

    Priority:
    1) Explicit ENGINE_DB_PATH environment variable
    2) Standard user config directory (~/.config, APPDATA, or Application Support)
    """
    configured_path = os.environ.get(DB_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()
    return user_config_dir() / DB_FILENAME


def resolve_config_path() -> Path:
    configured_path = os.environ.get(CONFIG_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()
    return Path.cwd() / CONFIG_FILENAME


def load_config_or_defaults(config_path: Path) -> EngineConfig:
    try:
        config = load_engine_config(config_path)
    except FileNotFoundError:
        logger.info("No config file, using engine defaults (%s)", config_path)
        return EngineConfig()
    logger.info("Loaded engine config from %s", config_path)
    return config


async def open_database(db_path: str | Path) -> aiosqlite.Connection:
    db = await aiosqlite.connect(
        str(db_path),
        isolation_level=None,  # CRITICAL: enables manual BEGIN IMMEDIATE
    )
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    await db.execute("PRAGMA synchronous=NORMAL")
    await ensure_schema(db)
    return db


async def _periodic_sweep(ctx: AppContext) -> None:
    while True:
        await asyncio.sleep(ctx.config.sweep_interval_seconds)
        try:
            await ctx.sessions.sweep_idle()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("background check failed: idle_sweep")


@asynccontextmanager
async def engine_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the engine database, wire components, run the idle sweep; clean up on shutdown."""
    del server
    config_path = resolve_config_path()
    config = load_config_or_defaults(config_path)
    db_path = resolve_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await open_database(db_path)

    ctx = build_app_context(db, config)
    set_app_context(ctx)
    sweep_task = asyncio.create_task(_periodic_sweep(ctx), name="session-idle-sweep")

    logger.info(
        "Engine ready - db=%s, tools=%s",
        db_path,
        ",".join(ctx.registry.names()) or "(none)",
    )
    try:
        yield ctx
    finally:
        set_app_context(None)
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
        await ctx.orchestrator.shutdown()
        await ctx.sessions.close_all()
        await ctx.orchestrator.responder.aclose()
        await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        await db.close()
