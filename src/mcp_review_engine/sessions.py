"""Review session lifecycle: create, lookup, enumerate, close, idle sweep."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mcp_review_engine.errors import (
    InvalidToolSelection,
    SessionClosed,
    SessionNotFound,
    UnknownTool,
)
from mcp_review_engine.models import SessionInfo, SessionStatus, utc_now
from mcp_review_engine.registry import ToolRegistry
from mcp_review_engine.state_machine import validate_session_transition

logger = logging.getLogger("mcp_review_engine")

CloseListener = Callable[[SessionInfo, str], Awaitable[None]]


@dataclass
class _SessionRecord:
    session_id: str
    available_tools: tuple[str, ...]
    status: SessionStatus = SessionStatus.CREATED
    context: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    last_active_at: datetime = field(default_factory=utc_now)
    last_active_mono: float = field(default_factory=time.monotonic)
    closed_mono: float | None = None
    run_count: int = 0
    active_runs: int = 0

    def snapshot(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            available_tools=self.available_tools,
            status=self.status,
            context_size=len(self.context),
            run_count=self.run_count,
            created_at=self.created_at,
            last_active_at=self.last_active_at,
        )

    def touch(self) -> None:
        self.last_active_at = utc_now()
        self.last_active_mono = time.monotonic()

    def transition(self, target: SessionStatus) -> None:
        validate_session_transition(self.status, target)
        self.status = target


def _short(session_id: str) -> str:
    return session_id[:8]


@dataclass
class SessionManager:
    """Owns the session table. Every read and write goes through ``_lock``.

    Closed sessions are kept as tombstones (context released) so later calls
    fail with SessionClosed; tombstones are purged by the idle sweep after
    ``closed_retention_seconds``, after which the id is simply not found.
    """

    registry: ToolRegistry
    idle_timeout_seconds: float = 300.0
    closed_retention_seconds: float = 3600.0
    _sessions: dict[str, _SessionRecord] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _close_listeners: list[CloseListener] = field(default_factory=list)

    def add_close_listener(self, listener: CloseListener) -> None:
        """Register an async callback fired once per session when it closes."""
        self._close_listeners.append(listener)

    def _record(self, session_id: str) -> _SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    def _open_record(self, session_id: str) -> _SessionRecord:
        record = self._record(session_id)
        if record.status is SessionStatus.CLOSED:
            raise SessionClosed(session_id)
        return record

    async def create_session(self, allowed_tools: Iterable[str] | None = None) -> SessionInfo:
        if allowed_tools is None:
            tools = self.registry.names()
        else:
            tools = tuple(dict.fromkeys(allowed_tools))
            for name in tools:
                if name not in self.registry:
                    raise UnknownTool(name)
        async with self._lock:
            session_id = str(uuid.uuid4())
            while session_id in self._sessions:
                session_id = str(uuid.uuid4())
            record = _SessionRecord(session_id=session_id, available_tools=tools)
            self._sessions[session_id] = record
            info = record.snapshot()
        logger.info(
            "create_session -> %s tools=%s", _short(session_id), ",".join(tools) or "(none)"
        )
        return info

    async def get_session(self, session_id: str) -> SessionInfo:
        """Snapshot of a session in any state, closed ones included.

        This lookup is the one read that does not raise SessionClosed, so callers
        can observe the closed status; operations use ``require_open``. Once the
        tombstone is purged (after ``closed_retention_seconds``) the id raises
        SessionNotFound instead.
        """
        async with self._lock:
            return self._record(session_id).snapshot()

    async def require_open(self, session_id: str) -> SessionInfo:
        async with self._lock:
            return self._open_record(session_id).snapshot()

    async def list_active(self) -> list[SessionInfo]:
        async with self._lock:
            return [
                record.snapshot()
                for record in self._sessions.values()
                if record.status is not SessionStatus.CLOSED
            ]

    async def begin_run(self, session_id: str, requested_tools: Iterable[str]) -> SessionInfo:
        """Validate a run's tool selection and mark the session busy."""
        async with self._lock:
            record = self._open_record(session_id)
            requested = list(dict.fromkeys(requested_tools))
            rejected = [name for name in requested if name not in record.available_tools]
            if rejected:
                raise InvalidToolSelection(rejected, list(record.available_tools))
            if record.status is SessionStatus.CREATED:
                record.transition(SessionStatus.ACTIVE)
            record.run_count += 1
            record.active_runs += 1
            record.touch()
            return record.snapshot()

    async def end_run(self, session_id: str) -> None:
        async with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return
            record.active_runs = max(0, record.active_runs - 1)
            record.touch()

    async def touch(self, session_id: str) -> None:
        async with self._lock:
            self._open_record(session_id).touch()

    async def add_context(self, session_id: str, key: str, value: Any) -> int:
        """Store a context entry; returns the new context size."""
        async with self._lock:
            record = self._open_record(session_id)
            record.context[key] = value
            record.touch()
            return len(record.context)

    async def get_context(self, session_id: str) -> dict[str, Any]:
        async with self._lock:
            return dict(self._open_record(session_id).context)

    async def close_session(self, session_id: str, reason: str = "explicit") -> SessionInfo:
        """Close a session. Closing an already-closed session is a no-op."""
        async with self._lock:
            record = self._record(session_id)
            if record.status is SessionStatus.CLOSED:
                return record.snapshot()
            info = self._close_locked(record)
        logger.info("close_session -> %s (%s)", _short(session_id), reason)
        await self._notify_closed(info, reason)
        return info

    def _close_locked(self, record: _SessionRecord) -> SessionInfo:
        record.transition(SessionStatus.CLOSED)
        record.context.clear()
        record.closed_mono = time.monotonic()
        return record.snapshot()

    async def _notify_closed(self, info: SessionInfo, reason: str) -> None:
        for listener in list(self._close_listeners):
            try:
                await listener(info, reason)
            except Exception:
                logger.exception("session close listener failed: %s", _short(info.session_id))

    async def sweep_idle(self, now: float | None = None) -> list[str]:
        """Close idle sessions with no in-flight runs; purge old tombstones."""
        current = time.monotonic() if now is None else now
        closed: list[SessionInfo] = []
        async with self._lock:
            for session_id, record in list(self._sessions.items()):
                if record.status is SessionStatus.CLOSED:
                    if (
                        record.closed_mono is not None
                        and current - record.closed_mono > self.closed_retention_seconds
                    ):
                        del self._sessions[session_id]
                    continue
                if record.active_runs > 0:
                    continue
                if current - record.last_active_mono > self.idle_timeout_seconds:
                    closed.append(self._close_locked(record))
        for info in closed:
            logger.info("close_session -> %s (idle_timeout)", _short(info.session_id))
            await self._notify_closed(info, "idle_timeout")
        if closed:
            logger.info("sweep_idle -> closed %s idle session(s)", len(closed))
        return [info.session_id for info in closed]

    async def close_all(self, reason: str = "shutdown") -> list[str]:
        async with self._lock:
            open_ids = [
                session_id
                for session_id, record in self._sessions.items()
                if record.status is not SessionStatus.CLOSED
            ]
        for session_id in open_ids:
            await self.close_session(session_id, reason=reason)
        return open_ids
