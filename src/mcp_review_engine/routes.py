"""HTTP routes for following review runs: SSE progress stream and result lookup."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from mcp_review_engine import __version__
from mcp_review_engine.errors import RunNotFound

if TYPE_CHECKING:
    from mcp_review_engine.db import AppContext

logger = logging.getLogger("mcp_review_engine")

SSE_HEARTBEAT_INTERVAL: float = 15.0

# Module-level AppContext, set by engine_lifespan via set_app_context().
_app_ctx: AppContext | None = None


def set_app_context(ctx: AppContext | None) -> None:
    """Store the AppContext for route handlers to access."""
    global _app_ctx
    _app_ctx = ctx


def _not_ready() -> Response:
    return JSONResponse({"error": "Engine is not ready", "code": "not_ready"}, status_code=503)


def _run_not_found(exc: RunNotFound) -> Response:
    return JSONResponse({"error": str(exc), "code": exc.code}, status_code=404)


def register_run_routes(mcp: object) -> None:
    """Register the run HTTP routes on the FastMCP server instance."""

    @mcp.custom_route("/runs/{run_id}/events", methods=["GET"])  # type: ignore[union-attr]
    async def run_events(request: Request) -> Response:
        """SSE stream of ReviewUpdates for one run.

        One ``update`` event per pipeline transition; the server closes the
        stream right after the terminal (completed/error) update. Runs that
        already finished get a single ``end`` event.
        """
        ctx = _app_ctx
        if ctx is None:
            return _not_ready()
        run_id = request.path_params["run_id"]
        try:
            subscription = await ctx.orchestrator.subscribe(run_id)
        except RunNotFound as exc:
            return _run_not_found(exc)

        async def event_stream() -> AsyncIterator[str]:
            logger.info("run_events -> client connected for run %s", run_id[:8])
            try:
                yield f"event: connected\ndata: {json.dumps({'run_id': run_id})}\n\n"
                iterator = aiter(subscription)
                while True:
                    try:
                        update = await asyncio.wait_for(
                            anext(iterator), timeout=SSE_HEARTBEAT_INTERVAL
                        )
                    except TimeoutError:
                        yield "event: heartbeat\ndata: {}\n\n"
                        continue
                    except StopAsyncIteration:
                        break
                    yield (
                        f"id: {update.sequence}\nevent: update\n"
                        f"data: {update.model_dump_json()}\n\n"
                    )
                yield f"event: end\ndata: {json.dumps({'run_id': run_id})}\n\n"
            except asyncio.CancelledError:
                logger.info("run_events -> client disconnected for run %s", run_id[:8])
                return
            finally:
                subscription.close()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @mcp.custom_route("/runs/{run_id}/result", methods=["GET"])  # type: ignore[union-attr]
    async def run_result(request: Request) -> Response:
        """Composite result as JSON; 202 with the current status while running."""
        ctx = _app_ctx
        if ctx is None:
            return _not_ready()
        run_id = request.path_params["run_id"]
        try:
            result = await ctx.orchestrator.get_result(run_id)
            if result is None:
                status = await ctx.orchestrator.get_status(run_id)
                if status.get("finished_at"):
                    # Finished without a composed result.
                    return JSONResponse(
                        {"error": status["error"], "code": status["error_code"]},
                        status_code=500,
                    )
                return JSONResponse(status, status_code=202)
        except RunNotFound as exc:
            return _run_not_found(exc)
        return Response(result.model_dump_json(), media_type="application/json")

    @mcp.custom_route("/health", methods=["GET"])  # type: ignore[union-attr]
    async def health(request: Request) -> Response:
        ctx = _app_ctx
        if ctx is None:
            return _not_ready()
        sessions = await ctx.sessions.list_active()
        return JSONResponse({
            "status": "ok",
            "version": __version__,
            "tools": list(ctx.registry.names()),
            "active_sessions": len(sessions),
        })
