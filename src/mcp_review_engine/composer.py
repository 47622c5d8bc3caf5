"""Builds the final EnhancedReviewResult from a finished run's captured state."""

from __future__ import annotations

from typing import TYPE_CHECKING

from mcp_review_engine.errors import ComposerInternal, RunCancelled, RunTimeout
from mcp_review_engine.models import (
    TERMINAL_STATUSES,
    AIResponse,
    EnhancedReviewResult,
    RunStatus,
    ToolResult,
)

if TYPE_CHECKING:
    from mcp_review_engine.pipeline import RunState


def _padding_reason(error_code: str | None) -> str:
    if error_code == RunTimeout.code:
        return "timeout"
    if error_code == RunCancelled.code:
        return "cancelled"
    return "not executed"


def compose(run: RunState) -> EnhancedReviewResult:
    """Compose the artifact for a run in a terminal state.

    Pure over the run's captured state: the timestamp is the run's finish
    time and synthetic results are stamped with it too, so composing the same
    run twice gives equal results.

    AI tool calls without a recorded result (run timed out, was cancelled, or
    failed mid-chain) are paired with a synthetic failed ToolResult so that
    ``ai_response.tool_calls`` and ``ai_response.tool_results`` line up.
    """
    if run.status not in TERMINAL_STATUSES or run.finished_at is None:
        raise ComposerInternal(f"Run {run.run_id} is not finished (status={run.status})")
    if len(run.ai_results) > len(run.ai_calls):
        raise ComposerInternal(
            f"Run {run.run_id} has {len(run.ai_results)} AI tool results "
            f"for {len(run.ai_calls)} calls"
        )

    finished_at = run.finished_at
    reason = _padding_reason(run.error_code)
    paired = list(run.ai_results)
    for call in run.ai_calls[len(paired):]:
        paired.append(
            ToolResult(
                success=False,
                error=reason,
                metadata={"tool": call.name, "duration_ms": 0, "synthetic": True},
                timestamp=finished_at,
            )
        )

    ai_response = AIResponse(
        content=run.ai_content,
        tool_calls=list(run.ai_calls),
        tool_results=paired,
        metadata={**run.ai_metadata, "rounds": run.ai_rounds},
    )

    findings = sum(1 for result in [*run.stage_results, *run.ai_results] if result.success)
    metadata = {
        "request": run.request.model_dump(mode="json"),
        "tools": list(run.tools),
        "stages": [stage.status.value for stage in run.stages],
        "tool_call_count": len(run.stage_results) + len(run.ai_calls),
        "finding_count": findings,
        "started_at": run.started_at.isoformat(),
        "finished_at": finished_at.isoformat(),
        "duration_ms": int((finished_at - run.started_at).total_seconds() * 1000),
        **run.extra_metadata,
    }

    return EnhancedReviewResult(
        run_id=run.run_id,
        session_id=run.session_id,
        success=run.status is RunStatus.COMPLETED,
        error=run.error,
        error_code=run.error_code,
        ai_response=ai_response,
        tool_results=list(run.stage_results),
        metadata=metadata,
        timestamp=finished_at,
    )
