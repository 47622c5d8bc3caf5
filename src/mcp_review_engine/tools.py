"""MCP tool definitions for the MCP Review Engine."""

from __future__ import annotations

import logging
from typing import Any

from fastmcp import Context
from pydantic import ValidationError

from mcp_review_engine.db import AppContext
from mcp_review_engine.errors import EngineError
from mcp_review_engine.models import AuditEventType, RunRequest, SessionInfo, ToolCall
from mcp_review_engine.server import caller_tag, mcp

logger = logging.getLogger("mcp_review_engine")

DEFAULT_RESULT_WAIT_SECONDS = 25.0
MAX_RESULT_WAIT_SECONDS = 300.0


def mcp_tool(*args, **kwargs):
    """FastMCP tool decorator that keeps a `.fn` handle for tests/internal calls."""
    raw_tool = mcp.tool

    # Bare decorator usage: @mcp_tool
    if args and callable(args[0]) and len(args) == 1 and not kwargs:
        fn = args[0]
        registered = raw_tool(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    decorator = raw_tool(*args, **kwargs)

    def _decorate(fn):
        registered = decorator(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    return _decorate


def _app_ctx(ctx: Context) -> AppContext:
    """Resolve the engine AppContext from a FastMCP Context, across versions."""
    if ctx is None:
        raise RuntimeError("Missing MCP context")
    if hasattr(ctx, "lifespan_context"):
        return ctx.lifespan_context
    rc = getattr(ctx, "request_context", None)
    if rc is not None and hasattr(rc, "lifespan_context"):
        return rc.lifespan_context
    fm = getattr(ctx, "fastmcp", None)
    if fm is not None and hasattr(fm, "_lifespan_result"):
        return fm._lifespan_result
    raise RuntimeError("Unable to resolve engine lifespan context")


def _engine_error(tool_name: str, exc: EngineError) -> dict:
    logger.info("%s -> %s: %s", tool_name, exc.code, exc)
    return {"error": str(exc), "code": exc.code}


def _invalid_request(tool_name: str, message: str) -> dict:
    logger.info("%s -> invalid request: %s", tool_name, message)
    return {"error": message, "code": "invalid_request"}


def _short(identifier: str | None) -> str:
    """Render compact session/run IDs in logs."""
    if not identifier:
        return "unknown"
    return identifier[:8]


def _tag_session(session_id: str | None) -> None:
    caller_tag.set(f"session-{_short(session_id)}" if session_id else "client")


def _session_payload(info: SessionInfo) -> dict:
    return info.model_dump(mode="json")


@mcp_tool
async def list_tools(ctx: Context = None) -> dict:
    """List every registered tool with its description and input schema."""
    app: AppContext = _app_ctx(ctx)
    definitions = app.registry.list()
    return {"tools": [definition.model_dump(mode="json") for definition in definitions]}


@mcp_tool
async def create_session(tools: list[str] | None = None, ctx: Context = None) -> dict:
    """Open a review session.

    `tools` restricts the session to a subset of registered tools; omitted means
    every registered tool.
    """
    caller_tag.set("client")
    app: AppContext = _app_ctx(ctx)
    try:
        info = await app.sessions.create_session(tools)
    except EngineError as exc:
        return _engine_error("create_session", exc)
    await app.orchestrator.record_audit(
        info.session_id,
        AuditEventType.SESSION_CREATED,
        {"tools": list(info.available_tools)},
    )
    return _session_payload(info)


@mcp_tool
async def list_sessions(ctx: Context = None) -> dict:
    """List sessions that are not closed."""
    app: AppContext = _app_ctx(ctx)
    sessions = await app.sessions.list_active()
    return {"sessions": [_session_payload(info) for info in sessions]}


@mcp_tool
async def get_session(session_id: str, ctx: Context = None) -> dict:
    """Session snapshot plus the runs started in it."""
    _tag_session(session_id)
    app: AppContext = _app_ctx(ctx)
    try:
        info = await app.sessions.get_session(session_id)
    except EngineError as exc:
        return _engine_error("get_session", exc)
    payload = _session_payload(info)
    payload["runs"] = app.orchestrator.list_runs(session_id)
    return payload


@mcp_tool
async def close_session(session_id: str, ctx: Context = None) -> dict:
    """Close a session. Idempotent; in-flight runs are asked to cancel."""
    _tag_session(session_id)
    app: AppContext = _app_ctx(ctx)
    try:
        info = await app.sessions.close_session(session_id)
    except EngineError as exc:
        return _engine_error("close_session", exc)
    return _session_payload(info)


@mcp_tool
async def start_review(
    tools: list[str] | None = None,
    focus_areas: list[str] | None = None,
    severity_threshold: str = "medium",
    include_suggestions: bool = True,
    session_id: str | None = None,
    repository: str | None = None,
    title: str | None = None,
    description: str | None = None,
    author: str | None = None,
    prompt: str | None = None,
    context: dict[str, Any] | None = None,
    ctx: Context = None,
) -> dict:
    """Start an orchestrated review run and return its run_id immediately.

    Without `session_id` a session with every registered tool is created.
    `tools` must be a subset of the session's tools; empty means all of them.
    Follow progress with get_review_status or the SSE stream at
    /runs/{run_id}/events, and fetch the composite result with
    get_review_result.
    """
    _tag_session(session_id)
    app: AppContext = _app_ctx(ctx)
    fields: dict[str, Any] = {
        "tools": tools or [],
        "severity_threshold": severity_threshold,
        "include_suggestions": include_suggestions,
        "repository": repository,
        "title": title,
        "description": description,
        "author": author,
        "prompt": prompt,
        "context": context or {},
    }
    if focus_areas is not None:
        fields["focus_areas"] = focus_areas
    try:
        request = RunRequest.model_validate(fields)
    except ValidationError as exc:
        return _invalid_request("start_review", str(exc))

    try:
        run_id = await app.orchestrator.start_run(request, session_id)
    except EngineError as exc:
        return _engine_error("start_review", exc)
    except ValueError as exc:
        return _invalid_request("start_review", str(exc))
    status = await app.orchestrator.get_status(run_id)
    return {"run_id": run_id, "session_id": status["session_id"], "status": status["status"]}


@mcp_tool
async def get_review_status(run_id: str, ctx: Context = None) -> dict:
    """Current state of a run: status, progress counters and error, if any."""
    app: AppContext = _app_ctx(ctx)
    try:
        return await app.orchestrator.get_status(run_id)
    except EngineError as exc:
        return _engine_error("get_review_status", exc)


@mcp_tool
async def get_review_result(
    run_id: str,
    wait: bool = False,
    timeout_seconds: float | None = None,
    ctx: Context = None,
) -> dict:
    """Composite review result for a run.

    While the run is still going returns `{"run_id", "status": "pending"}`.
    With wait=True blocks until the run finishes, up to `timeout_seconds`
    (default 25, max 300).
    """
    app: AppContext = _app_ctx(ctx)
    timeout = None
    if wait:
        requested = DEFAULT_RESULT_WAIT_SECONDS if timeout_seconds is None else timeout_seconds
        timeout = max(0.0, min(MAX_RESULT_WAIT_SECONDS, requested))
    try:
        result = await app.orchestrator.get_result(run_id, wait=wait, timeout=timeout)
        if result is None:
            status = await app.orchestrator.get_status(run_id)
    except EngineError as exc:
        return _engine_error("get_review_result", exc)
    if result is None:
        if status.get("finished_at"):
            return {"error": status["error"], "code": status["error_code"]}
        return {"run_id": run_id, "status": "pending"}
    return result.model_dump(mode="json")


@mcp_tool
async def cancel_review(run_id: str, ctx: Context = None) -> dict:
    """Ask a run to stop before its next stage. Finished runs are left as-is."""
    app: AppContext = _app_ctx(ctx)
    try:
        cancelled = await app.orchestrator.cancel_run(run_id)
    except EngineError as exc:
        return _engine_error("cancel_review", exc)
    return {"run_id": run_id, "cancelled": cancelled}


async def _session_scope(app: AppContext, session_id: str | None) -> tuple[str, ...] | None:
    if session_id is None:
        return None
    info = await app.sessions.require_open(session_id)
    await app.sessions.touch(session_id)
    return info.available_tools


async def _remember_results(
    app: AppContext,
    session_id: str | None,
    calls: list[ToolCall],
    results: list,
) -> None:
    if session_id is None:
        return
    for call, result in zip(calls, results, strict=True):
        if result.success:
            await app.sessions.add_context(session_id, f"last_{call.name}_result", result.content)


@mcp_tool
async def execute_tool(
    name: str,
    parameters: dict[str, Any] | None = None,
    session_id: str | None = None,
    timeout_seconds: float | None = None,
    ctx: Context = None,
) -> dict:
    """Invoke one tool directly and return its ToolResult.

    With `session_id` the call is limited to the session's tools and a
    successful result is stored in the session context.
    """
    _tag_session(session_id)
    app: AppContext = _app_ctx(ctx)
    call = ToolCall(name=name, parameters=parameters or {})
    try:
        allowed = await _session_scope(app, session_id)
        result = await app.executor.execute(call, timeout_seconds, allowed=allowed)
        await _remember_results(app, session_id, [call], [result])
    except EngineError as exc:
        return _engine_error("execute_tool", exc)
    return result.model_dump(mode="json")


@mcp_tool
async def execute_tool_chain(
    calls: list[dict[str, Any]],
    session_id: str | None = None,
    timeout_seconds: float | None = None,
    ctx: Context = None,
) -> dict:
    """Run several tool calls concurrently; results come back in call order.

    Each call is `{"name": ..., "parameters": {...}}`.
    """
    _tag_session(session_id)
    app: AppContext = _app_ctx(ctx)
    try:
        parsed = [ToolCall.model_validate(raw) for raw in calls]
    except ValidationError as exc:
        return _invalid_request("execute_tool_chain", str(exc))
    try:
        allowed = await _session_scope(app, session_id)
        results = await app.executor.execute_chain(parsed, timeout_seconds, allowed=allowed)
        await _remember_results(app, session_id, parsed, results)
    except EngineError as exc:
        return _engine_error("execute_tool_chain", exc)
    logger.info(
        "execute_tool_chain -> %s call(s), %s ok",
        len(results),
        sum(1 for result in results if result.success),
    )
    return {"results": [result.model_dump(mode="json") for result in results]}
