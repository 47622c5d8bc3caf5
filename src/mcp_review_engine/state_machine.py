"""State machines for run and session lifecycle transitions."""

from __future__ import annotations

from mcp_review_engine.models import RunStatus, SessionStatus

# Tool-chain stages are configurable and may be omitted, but progress is
# forward-only and every successful run passes through GENERATING.
VALID_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.STARTED: {
        RunStatus.ANALYZING,
        RunStatus.CHECKING,
        RunStatus.EVALUATING,
        RunStatus.GENERATING,
        RunStatus.ERROR,
    },
    RunStatus.ANALYZING: {
        RunStatus.CHECKING,
        RunStatus.EVALUATING,
        RunStatus.GENERATING,
        RunStatus.ERROR,
    },
    RunStatus.CHECKING: {RunStatus.EVALUATING, RunStatus.GENERATING, RunStatus.ERROR},
    RunStatus.EVALUATING: {RunStatus.GENERATING, RunStatus.ERROR},
    RunStatus.GENERATING: {RunStatus.COMPLETED, RunStatus.ERROR},
    RunStatus.COMPLETED: set(),  # terminal
    RunStatus.ERROR: set(),  # terminal
}

SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.CREATED: {SessionStatus.ACTIVE, SessionStatus.CLOSED},
    SessionStatus.ACTIVE: {SessionStatus.CLOSED},
    SessionStatus.CLOSED: set(),  # terminal, no resurrection
}


def validate_transition(current: RunStatus, target: RunStatus) -> None:
    """Validate a run state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current)
    if allowed is None:
        raise ValueError(f"Unknown state: {current}")
    if target not in allowed:
        raise ValueError(
            f"Invalid transition: {current} -> {target}. "
            f"Valid targets from {current}: {sorted(allowed)}"
        )


def validate_session_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a session state transition. Raises ValueError if invalid."""
    allowed = SESSION_TRANSITIONS.get(current)
    if allowed is None:
        raise ValueError(f"Unknown session state: {current}")
    if target not in allowed:
        raise ValueError(
            f"Invalid session transition: {current} -> {target}. "
            f"Valid targets from {current}: {sorted(allowed)}"
        )
