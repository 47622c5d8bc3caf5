"""Pydantic models and enums for the MCP Review Engine."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class RunStatus(StrEnum):
    """Orchestration run lifecycle states, in pipeline order."""

    STARTED = "started"
    ANALYZING = "analyzing"
    CHECKING = "checking"
    EVALUATING = "evaluating"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


# Statuses a tool-chain stage may occupy.
STAGE_STATUSES: tuple[RunStatus, ...] = (
    RunStatus.ANALYZING,
    RunStatus.CHECKING,
    RunStatus.EVALUATING,
)

TERMINAL_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.COMPLETED, RunStatus.ERROR})


class SessionStatus(StrEnum):
    """Session lifecycle states. Monotonic: created -> active -> closed."""

    CREATED = "created"
    ACTIVE = "active"
    CLOSED = "closed"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuditEventType(StrEnum):
    """Audit event types for the append-only audit_events table."""

    SESSION_CREATED = "session_created"
    SESSION_CLOSED = "session_closed"
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"


class ToolDefinition(BaseModel):
    """Catalogue entry describing an invocable tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    input_schema: dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseModel):
    """A request to invoke a tool by name."""

    model_config = ConfigDict(frozen=True)

    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Uniform success/failure envelope for one tool invocation."""

    model_config = ConfigDict(frozen=True)

    success: bool
    content: Any = None
    error: str | None = None
    mime_type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    @classmethod
    def ok(
        cls,
        content: Any,
        *,
        mime_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ToolResult:
        return cls(success=True, content=content, mime_type=mime_type, metadata=metadata or {})

    @classmethod
    def failure(cls, error: str, *, metadata: dict[str, Any] | None = None) -> ToolResult:
        return cls(success=False, error=error, metadata=metadata or {})


class SessionInfo(BaseModel):
    """Point-in-time snapshot of a review session."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    available_tools: tuple[str, ...]
    status: SessionStatus
    context_size: int = 0
    run_count: int = 0
    created_at: datetime
    last_active_at: datetime


class ReviewOptions(BaseModel):
    """Caller-selected review options."""

    tools: list[str] = Field(default_factory=list)
    focus_areas: list[str] = Field(
        default_factory=lambda: ["security", "performance", "maintainability"]
    )
    severity_threshold: Severity = Severity.MEDIUM
    include_suggestions: bool = True


class RunRequest(ReviewOptions):
    """Everything needed to start one orchestration run."""

    repository: str | None = None
    title: str | None = None
    description: str | None = None
    author: str | None = None
    prompt: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class ReviewUpdate(BaseModel):
    """One progress event for a run; one per pipeline state transition."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    sequence: int
    status: RunStatus
    content: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AIResponse(BaseModel):
    """Responder output merged with the tool calls it issued."""

    model_config = ConfigDict(frozen=True)

    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class EnhancedReviewResult(BaseModel):
    """Final composite artifact for one run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    session_id: str
    success: bool
    error: str | None = None
    error_code: str | None = None
    ai_response: AIResponse = Field(default_factory=AIResponse)
    tool_results: list[ToolResult] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
