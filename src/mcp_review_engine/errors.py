"""Error kinds raised by the review engine.

Tool-level kinds (InvalidParameters, ToolTimeout, ToolFault) are normally
captured into a failed ToolResult by the executor and only exist as classes so
the executor can name them in result metadata. Everything else propagates to
the caller of the operation that failed.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors. ``code`` is stable and caller-visible."""

    code: str = "engine_error"


class UnknownTool(EngineError):
    code = "unknown_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class DuplicateTool(EngineError):
    code = "duplicate_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool already registered: {name}")
        self.name = name


class InvalidParameters(EngineError):
    code = "invalid_parameters"

    def __init__(self, tool: str, problems: list[str]) -> None:
        super().__init__(f"Invalid parameters for {tool}: {'; '.join(problems)}")
        self.tool = tool
        self.problems = problems


class ToolTimeout(EngineError):
    code = "tool_timeout"


class ToolFault(EngineError):
    code = "tool_fault"


class SessionNotFound(EngineError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionClosed(EngineError):
    code = "session_closed"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session is closed: {session_id}")
        self.session_id = session_id


class InvalidToolSelection(EngineError):
    code = "invalid_tool_selection"

    def __init__(self, rejected: list[str], allowed: list[str]) -> None:
        super().__init__(
            f"Tools not available in session: {', '.join(rejected)}. "
            f"Allowed: {', '.join(allowed) or '(none)'}"
        )
        self.rejected = rejected
        self.allowed = allowed


class ToolCallDepthExceeded(EngineError):
    code = "tool_call_depth_exceeded"

    def __init__(self, max_depth: int) -> None:
        super().__init__(f"AI responder exceeded max tool call depth ({max_depth})")
        self.max_depth = max_depth


class RunTimeout(EngineError):
    code = "timeout"


class RunCancelled(EngineError):
    code = "cancelled"


class RunNotFound(EngineError):
    code = "run_not_found"

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class ComposerInternal(EngineError):
    code = "composer_internal"
