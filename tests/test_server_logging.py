"""Tests for engine logfile configuration in server logging setup."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from mcp_review_engine import server


def _reset_engine_logger_handlers() -> None:
    logger = logging.getLogger("mcp_review_engine")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def test_configure_logging_writes_structured_engine_log(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    _reset_engine_logger_handlers()
    monkeypatch.delenv("ENGINE_LOG_DIR", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))

    server._configure_logging()
    logger = logging.getLogger("mcp_review_engine")
    token = server.caller_tag.set("session-abc")
    try:
        logger.info("engine log entry")
    finally:
        server.caller_tag.reset(token)
        _reset_engine_logger_handlers()

    log_path = tmp_path / "xdg" / "mcp-review-engine" / "engine-logs" / "engine.jsonl"
    assert log_path.exists()
    lines = [line for line in log_path.read_text(encoding="utf-8").splitlines() if line.strip()]
    payload = json.loads(lines[-1])
    assert payload["message"] == "engine log entry"
    assert payload["caller_tag"] == "session-abc"
    assert payload["level"] == "info"
    assert payload["ts"].endswith("Z")


def test_configure_logging_rotates_engine_log(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    _reset_engine_logger_handlers()
    monkeypatch.setenv("ENGINE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("ENGINE_LOG_MAX_BYTES", "1024")
    monkeypatch.setenv("ENGINE_LOG_BACKUPS", "2")

    server._configure_logging()
    logger = logging.getLogger("mcp_review_engine")
    for idx in range(3):
        logger.info("x" * 900 + f"-{idx}")
    _reset_engine_logger_handlers()

    base = tmp_path / "logs" / "engine.jsonl"
    assert base.exists()
    assert Path(f"{base}.1").exists()


def test_configure_logging_is_idempotent(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    _reset_engine_logger_handlers()
    monkeypatch.setenv("ENGINE_LOG_DIR", str(tmp_path / "logs"))
    server._configure_logging()
    server._configure_logging()
    try:
        assert len(logging.getLogger("mcp_review_engine").handlers) == 2
    finally:
        _reset_engine_logger_handlers()


def test_exception_captured_in_json(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    _reset_engine_logger_handlers()
    monkeypatch.setenv("ENGINE_LOG_DIR", str(tmp_path / "logs"))
    server._configure_logging()
    logger = logging.getLogger("mcp_review_engine")
    try:
        raise RuntimeError("kaboom")
    except RuntimeError:
        logger.exception("review run failed")
    finally:
        _reset_engine_logger_handlers()

    lines = (tmp_path / "logs" / "engine.jsonl").read_text(encoding="utf-8").splitlines()
    payload = json.loads(lines[-1])
    assert payload["level"] == "error"
    assert "RuntimeError: kaboom" in payload["exception"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 7), ("12", 12), ("abc", 7), ("0", 7)],
)
def test_read_positive_int_env(
    monkeypatch: pytest.MonkeyPatch, raw: str | None, expected: int
) -> None:
    if raw is None:
        monkeypatch.delenv("ENGINE_TEST_INT", raising=False)
    else:
        monkeypatch.setenv("ENGINE_TEST_INT", raw)
    assert server._read_positive_int_env("ENGINE_TEST_INT", 7, 1) == expected
