"""Tests for engine database schema, result store, audit trail and path resolution."""

from __future__ import annotations

import json
from pathlib import Path

import aiosqlite
import pytest

from mcp_review_engine import db as db_module
from mcp_review_engine import routes
from mcp_review_engine.audit import record_event
from mcp_review_engine.config_schema import EngineConfig
from mcp_review_engine.db import (
    SqliteResultStore,
    ensure_schema,
    load_config_or_defaults,
    open_database,
    resolve_config_path,
    resolve_db_path,
)
from mcp_review_engine.models import AuditEventType, EnhancedReviewResult, ToolResult, utc_now


def _result(run_id: str = "run-1", success: bool = True) -> EnhancedReviewResult:
    return EnhancedReviewResult(
        run_id=run_id,
        session_id="session-1",
        success=success,
        error=None if success else "timeout",
        error_code=None if success else "timeout",
        tool_results=[ToolResult.ok({"files": 3}, metadata={"tool": "git"})],
        metadata={"tools": ["git"]},
        timestamp=utc_now(),
    )


class TestSchema:
    async def test_tables_created(self, db: aiosqlite.Connection) -> None:
        cursor = await db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        tables = {row["name"] for row in await cursor.fetchall()}
        assert {"audit_events", "review_results"} <= tables

    async def test_schema_is_idempotent(self, db: aiosqlite.Connection) -> None:
        await ensure_schema(db)
        await ensure_schema(db)

    async def test_open_database_uses_wal(self, tmp_path: Path) -> None:
        conn = await open_database(tmp_path / "engine.sqlite3")
        try:
            cursor = await conn.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0] == "wal"
        finally:
            await conn.close()


class TestResultStore:
    async def test_save_and_load(self, db: aiosqlite.Connection) -> None:
        store = SqliteResultStore(db)
        result = _result()
        await store.save(result)
        assert await store.load("run-1") == result

    async def test_save_replaces(self, db: aiosqlite.Connection) -> None:
        store = SqliteResultStore(db)
        await store.save(_result(success=True))
        await store.save(_result(success=False))
        loaded = await store.load("run-1")
        assert loaded is not None
        assert loaded.success is False
        cursor = await db.execute("SELECT COUNT(*) AS n, error_code FROM review_results")
        row = await cursor.fetchone()
        assert row["n"] == 1
        assert row["error_code"] == "timeout"

    async def test_load_missing(self, db: aiosqlite.Connection) -> None:
        assert await SqliteResultStore(db).load("nope") is None

    async def test_audit_trail_in_order(self, db: aiosqlite.Connection) -> None:
        store = SqliteResultStore(db)
        await store.record("run-1", AuditEventType.RUN_STARTED, {"tools": ["git"]})
        await store.record("run-1", AuditEventType.RUN_COMPLETED)
        await store.record("other", AuditEventType.RUN_STARTED)
        trail = await store.audit_trail("run-1")
        assert [e["event_type"] for e in trail] == ["run_started", "run_completed"]
        assert trail[0]["metadata"] == {"tools": ["git"]}
        assert trail[1]["metadata"] is None
        assert trail[0]["created_at"].endswith("Z")

    async def test_record_event_inside_transaction(self, db: aiosqlite.Connection) -> None:
        await db.execute("BEGIN IMMEDIATE")
        await record_event(db, "s-1", "session_created", actor="tester", metadata={"n": 1})
        await db.execute("COMMIT")
        cursor = await db.execute("SELECT actor, metadata FROM audit_events")
        row = await cursor.fetchone()
        assert row["actor"] == "tester"
        assert json.loads(row["metadata"]) == {"n": 1}


class TestPaths:
    def test_db_path_env_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("ENGINE_DB_PATH", str(tmp_path / "custom.sqlite3"))
        assert resolve_db_path() == tmp_path / "custom.sqlite3"

    def test_db_path_uses_xdg(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("ENGINE_DB_PATH", raising=False)
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert resolve_db_path() == tmp_path / "mcp-review-engine" / "mcp_review_engine.sqlite3"

    def test_config_path_defaults_to_cwd(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.delenv("ENGINE_CONFIG_PATH", raising=False)
        monkeypatch.chdir(tmp_path)
        assert resolve_config_path() == tmp_path / "mcp-review-engine.json"

    def test_missing_config_falls_back_to_defaults(self, tmp_path: Path) -> None:
        assert load_config_or_defaults(tmp_path / "absent.json") == EngineConfig()


class TestLifespan:
    async def test_lifespan_wires_and_cleans_up(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("ENGINE_DB_PATH", str(tmp_path / "engine.sqlite3"))
        monkeypatch.setenv("ENGINE_CONFIG_PATH", str(tmp_path / "absent.json"))
        async with db_module.engine_lifespan(None) as ctx:
            assert routes._app_ctx is ctx
            assert ctx.registry.names() == ("git", "database", "filesystem", "notification")
            session = await ctx.sessions.create_session()
        assert routes._app_ctx is None
        assert (tmp_path / "engine.sqlite3").exists()

        conn = await open_database(tmp_path / "engine.sqlite3")
        try:
            cursor = await conn.execute(
                "SELECT event_type FROM audit_events WHERE subject_id = ?",
                (session.session_id,),
            )
            rows = await cursor.fetchall()
            assert [row["event_type"] for row in rows] == ["session_closed"]
        finally:
            await conn.close()
