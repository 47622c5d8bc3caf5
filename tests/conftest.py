"""Shared test fixtures for the MCP Review Engine."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import aiosqlite
import pytest

from mcp_review_engine.config_schema import EngineConfig
from mcp_review_engine.db import AppContext, build_app_context, ensure_schema
from mcp_review_engine.models import (
    AIResponse,
    RunRequest,
    RunStatus,
    ToolCall,
    ToolDefinition,
    ToolResult,
)
from mcp_review_engine.pipeline import StageSpec
from mcp_review_engine.registry import FunctionTool, ToolRegistry
from mcp_review_engine.responder import AIResponder

ECHO_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "value": {"type": "string"},
        "count": {"type": "integer"},
        "mode": {"type": "string", "enum": ["fast", "slow"]},
    },
    "required": ["value"],
}


async def _echo(parameters: dict[str, Any]) -> dict[str, Any]:
    return {"echo": parameters["value"]}


async def _slow(parameters: dict[str, Any]) -> str:
    await asyncio.sleep(float(parameters.get("seconds", 5.0)))
    return "finally"


async def _boom(parameters: dict[str, Any]) -> Any:
    raise RuntimeError("tool exploded")


async def _scanner(parameters: dict[str, Any]) -> ToolResult:
    return ToolResult.ok(
        [{"severity": "critical", "category": "security"}],
        metadata={"severity": "critical"},
    )


@dataclass
class RecordingNotifier:
    """Stand-in notification tool that remembers what it was asked to send."""

    sent: list[dict[str, Any]] = field(default_factory=list)

    async def __call__(self, parameters: dict[str, Any]) -> ToolResult:
        self.sent.append(parameters)
        return ToolResult.ok("sent", metadata={"channel": parameters["channel"]})


def make_registry(notifier: RecordingNotifier | None = None) -> ToolRegistry:
    """Registry of deterministic fake tools."""
    registry = ToolRegistry()
    registry.register(
        FunctionTool("echo", _echo, description="Echo a value", input_schema=ECHO_SCHEMA)
    )
    registry.register(FunctionTool("slow", _slow, description="Sleeps before answering"))
    registry.register(FunctionTool("boom", _boom, description="Always raises"))
    registry.register(FunctionTool("scanner", _scanner, description="Reports a critical finding"))
    registry.register(
        FunctionTool(
            "notification",
            notifier or RecordingNotifier(),
            description="Records notifications",
            input_schema={
                "type": "object",
                "properties": {"channel": {"type": "string"}, "message": {"type": "string"}},
                "required": ["channel", "message"],
            },
        )
    )
    return registry


def echo_stages(request: RunRequest) -> list[StageSpec]:
    """Three quick stages built only from the echo tool."""
    return [
        StageSpec(
            status=RunStatus.ANALYZING,
            calls=(ToolCall(name="echo", parameters={"value": "analyze"}),),
        ),
        StageSpec(
            status=RunStatus.CHECKING,
            calls=(
                ToolCall(name="echo", parameters={"value": "check-1"}),
                ToolCall(name="echo", parameters={"value": "check-2"}),
            ),
        ),
        StageSpec(
            status=RunStatus.EVALUATING,
            calls=(ToolCall(name="echo", parameters={"value": "evaluate"}),),
        ),
    ]


class ScriptedResponder(AIResponder):
    """Replays canned AIResponses in order; a plain final answer once exhausted."""

    def __init__(self, script: Sequence[AIResponse] = (), delay: float = 0.0) -> None:
        self.script = list(script)
        self.delay = delay
        self.prompts: list[str] = []
        self.contexts: list[dict[str, Any]] = []
        self.tool_names: list[list[str]] = []
        self.closed = False

    async def respond(
        self,
        prompt: str,
        context: dict[str, Any],
        available_tools: Sequence[ToolDefinition],
    ) -> AIResponse:
        self.prompts.append(prompt)
        self.contexts.append(context)
        self.tool_names.append([tool.name for tool in available_tools])
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.script:
            return self.script.pop(0)
        return AIResponse(content="Looks good.", metadata={"model": "scripted"})

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class _MockFastMCP:
    """Stands in for the FastMCP instance so ctx.fastmcp._lifespan_result works."""

    _lifespan_result: AppContext


@dataclass
class MockContext:
    """Minimal mock for fastmcp.Context that provides fastmcp._lifespan_result."""

    fastmcp: _MockFastMCP

    @property
    def lifespan_context(self) -> AppContext:
        return self.fastmcp._lifespan_result


@pytest.fixture
async def db() -> AsyncIterator[aiosqlite.Connection]:
    """In-memory SQLite database for tests."""
    conn = await aiosqlite.connect(":memory:", isolation_level=None)
    conn.row_factory = aiosqlite.Row
    await ensure_schema(conn)
    yield conn
    await conn.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def registry(notifier: RecordingNotifier) -> ToolRegistry:
    return make_registry(notifier)


@pytest.fixture
def responder() -> ScriptedResponder:
    return ScriptedResponder()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(
        tool_timeout_seconds=2.0,
        ai_timeout_seconds=2.0,
        run_timeout_seconds=10.0,
    )


@pytest.fixture
async def app(
    db: aiosqlite.Connection,
    config: EngineConfig,
    registry: ToolRegistry,
    responder: ScriptedResponder,
) -> AsyncIterator[AppContext]:
    """Fully wired AppContext over fake tools; in-flight runs are cancelled on teardown."""
    context = build_app_context(
        db,
        config,
        registry=registry,
        responder=responder,
        stage_factory=echo_stages,
    )
    yield context
    await context.orchestrator.shutdown()


@pytest.fixture
def ctx(app: AppContext) -> MockContext:
    """Create a MockContext wrapping the wired AppContext."""
    return MockContext(fastmcp=_MockFastMCP(_lifespan_result=app))
