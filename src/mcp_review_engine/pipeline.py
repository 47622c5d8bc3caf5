"""Orchestration pipeline: drives one review run from acceptance to a composed result.

A run moves forward through ``started -> [analyzing] -> [checking] ->
[evaluating] -> generating -> completed`` (``error`` from any non-terminal
state). Every transition publishes exactly one ReviewUpdate, and the terminal
transition composes the EnhancedReviewResult exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from pydantic_core import to_jsonable_python

from mcp_review_engine.composer import compose
from mcp_review_engine.errors import (
    ComposerInternal,
    EngineError,
    InvalidToolSelection,
    RunCancelled,
    RunNotFound,
    RunTimeout,
    SessionClosed,
    SessionNotFound,
    ToolCallDepthExceeded,
)
from mcp_review_engine.executor import ToolExecutor
from mcp_review_engine.models import (
    STAGE_STATUSES,
    TERMINAL_STATUSES,
    AIResponse,
    AuditEventType,
    EnhancedReviewResult,
    ReviewUpdate,
    RunRequest,
    RunStatus,
    SessionInfo,
    ToolCall,
    ToolDefinition,
    ToolResult,
    utc_now,
)
from mcp_review_engine.responder import AIResponder
from mcp_review_engine.sessions import SessionManager
from mcp_review_engine.state_machine import validate_transition
from mcp_review_engine.streamer import Subscription, UpdateStreamer

logger = logging.getLogger("mcp_review_engine")

REVIEW_CHECKLIST: tuple[str, ...] = (
    "Analyze the code changes and their impact",
    "Check for security vulnerabilities",
    "Assess code quality and maintainability",
    "Review test coverage and documentation",
    "Compare with historical patterns and team standards",
    "Provide actionable suggestions for improvement",
)


@dataclass(frozen=True)
class StageSpec:
    """One tool-chain stage: the status it occupies and the calls it fans out."""

    status: RunStatus
    calls: tuple[ToolCall, ...] = ()
    description: str = ""


StageFactory = Callable[[RunRequest], Sequence[StageSpec]]


def build_default_stages(request: RunRequest) -> list[StageSpec]:
    """Context gathering, structure/diff analysis, then historical evaluation."""
    repository = request.repository or "."
    history: dict[str, Any] = {}
    if request.author:
        history["author"] = request.author
    return [
        StageSpec(
            status=RunStatus.ANALYZING,
            calls=(
                ToolCall(name="git", parameters={"command": "status", "repository": repository}),
                ToolCall(
                    name="database",
                    parameters={"query": "recent_reviews", "parameters": history},
                ),
            ),
            description="Gathering repository and review history context",
        ),
        StageSpec(
            status=RunStatus.CHECKING,
            calls=(
                ToolCall(
                    name="filesystem",
                    parameters={"operation": "analyze_structure", "path": repository},
                ),
                ToolCall(name="git", parameters={"command": "diff", "repository": repository}),
            ),
            description="Analyzing project structure and pending changes",
        ),
        StageSpec(
            status=RunStatus.EVALUATING,
            calls=(
                ToolCall(name="database", parameters={"query": "security_findings"}),
                ToolCall(name="database", parameters={"query": "quality_trends"}),
            ),
            description="Evaluating security findings and quality trends",
        ),
    ]


def validate_stages(stages: Sequence[StageSpec]) -> tuple[StageSpec, ...]:
    """Stages must use tool-chain statuses in strictly forward order."""
    previous = RunStatus.STARTED
    for stage in stages:
        if stage.status not in STAGE_STATUSES:
            allowed = [status.value for status in STAGE_STATUSES]
            raise ValueError(f"Stage status must be one of {allowed}, got {stage.status}")
        validate_transition(previous, stage.status)
        previous = stage.status
    return tuple(stages)


def build_review_prompt(request: RunRequest, tools: Sequence[ToolDefinition]) -> str:
    lines = [
        "Perform a comprehensive code review for the following pull request:",
        "",
        f"Title: {request.title or '(untitled)'}",
        f"Author: {request.author or '(unknown)'}",
        f"Description: {request.description or ''}",
        "",
        f"Focus Areas: {', '.join(request.focus_areas)}",
        f"Severity Threshold: {request.severity_threshold.value}",
        "",
        "Available tools for analysis:",
    ]
    lines.extend(f"- {tool.name}: {tool.description}" for tool in tools)
    lines.append("")
    lines.append("Please use the available tools to:")
    lines.extend(f"{number}. {item}" for number, item in enumerate(REVIEW_CHECKLIST, start=1))
    if not request.include_suggestions:
        lines.append("Report findings only; do not include improvement suggestions.")
    return "\n".join(lines) + "\n"


class ResultStore(Protocol):
    """Persistence boundary for composed results and lifecycle audit events."""

    async def save(self, result: EnhancedReviewResult) -> None: ...

    async def load(self, run_id: str) -> EnhancedReviewResult | None: ...

    async def record(
        self,
        subject_id: str,
        event_type: AuditEventType,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


@dataclass
class RunState:
    """Mutable state of one run. Owned by the run's task; read by everything else."""

    run_id: str
    session_id: str
    request: RunRequest
    tools: tuple[str, ...]
    stages: tuple[StageSpec, ...]
    status: RunStatus = RunStatus.STARTED
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    sequence: int = -1
    context: dict[str, Any] = field(default_factory=dict)
    stage_results: list[ToolResult] = field(default_factory=list)
    ai_calls: list[ToolCall] = field(default_factory=list)
    ai_results: list[ToolResult] = field(default_factory=list)
    ai_content: str = ""
    ai_metadata: dict[str, Any] = field(default_factory=dict)
    ai_rounds: int = 0
    extra_metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None
    cancel_requested: bool = False
    last_update: ReviewUpdate | None = None
    result: EnhancedReviewResult | None = None
    task: asyncio.Task[None] | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_transitions(self) -> int:
        # started + stages + generating + terminal
        return len(self.stages) + 3

    def finding_count(self) -> int:
        return sum(1 for result in [*self.stage_results, *self.ai_results] if result.success)

    def snapshot(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "session_id": self.session_id,
            "status": self.status.value,
            "sequence": self.sequence,
            "total_stages": self.total_transitions,
            "tools": list(self.tools),
            "stage_results": len(self.stage_results),
            "ai_tool_calls": len(self.ai_calls),
            "finding_count": self.finding_count(),
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "error_code": self.error_code,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def _short(identifier: str) -> str:
    return identifier[:8]


class Orchestrator:
    """Starts, drives, cancels and reports on review runs.

    Each run is an independent asyncio task. Cancellation is cooperative: the
    flag is checked before every state transition and before every responder
    round, so in-flight tool calls finish but nothing new starts.
    """

    def __init__(
        self,
        sessions: SessionManager,
        executor: ToolExecutor,
        responder: AIResponder,
        *,
        streamer: UpdateStreamer | None = None,
        stage_factory: StageFactory = build_default_stages,
        store: ResultStore | None = None,
        max_tool_call_depth: int = 3,
        tool_timeout: float | None = None,
        ai_timeout: float | None = None,
        run_timeout: float | None = None,
        critical_notification_channel: str = "console",
        max_finished_runs: int = 500,
    ) -> None:
        self.sessions = sessions
        self.executor = executor
        self.responder = responder
        self.streamer = streamer or UpdateStreamer()
        self.stage_factory = stage_factory
        self.store = store
        self.max_tool_call_depth = max_tool_call_depth
        self.tool_timeout = tool_timeout
        self.ai_timeout = ai_timeout
        self.run_timeout = run_timeout
        self.critical_notification_channel = critical_notification_channel
        self.max_finished_runs = max_finished_runs
        self._runs: dict[str, RunState] = {}
        sessions.add_close_listener(self._on_session_closed)

    # -- public API -------------------------------------------------------

    async def start_run(self, request: RunRequest, session_id: str | None = None) -> str:
        """Validate and schedule a run; returns its id without waiting for it."""
        stages = validate_stages(self.stage_factory(request))
        if session_id is None:
            # An implicit session offers the whole registry; reject before creating it.
            registry = self.sessions.registry
            rejected = [name for name in dict.fromkeys(request.tools) if name not in registry]
            if rejected:
                raise InvalidToolSelection(rejected, list(registry.names()))
            created = await self.sessions.create_session()
            session_id = created.session_id
            await self.record_audit(session_id, AuditEventType.SESSION_CREATED, {"implicit": True})
        info = await self.sessions.begin_run(session_id, request.tools)
        tools = tuple(dict.fromkeys(request.tools)) or info.available_tools

        run = RunState(
            run_id=str(uuid.uuid4()),
            session_id=session_id,
            request=request.model_copy(deep=True),
            tools=tools,
            stages=stages,
        )
        self._runs[run.run_id] = run
        self.streamer.open(run.run_id)
        run.task = asyncio.create_task(self._drive(run), name=f"review-run-{_short(run.run_id)}")
        logger.info(
            "start_review -> run %s in session %s tools=%s",
            _short(run.run_id),
            _short(session_id),
            ",".join(tools) or "(none)",
        )
        return run.run_id

    async def run_review(
        self, request: RunRequest, session_id: str | None = None
    ) -> EnhancedReviewResult:
        """Start a run and wait for its composed result."""
        run_id = await self.start_run(request, session_id)
        run = self._runs[run_id]
        await run.done.wait()
        if run.result is None:
            raise EngineError(f"Run {run_id} finished without a result")
        return run.result

    async def cancel_run(self, run_id: str) -> bool:
        """Request cancellation. Returns False when the run already finished."""
        run = self._runs.get(run_id)
        if run is None:
            if await self._load(run_id) is not None:
                return False
            raise RunNotFound(run_id)
        if run.is_finished:
            return False
        run.cancel_requested = True
        logger.info("cancel_review -> run %s cancel requested", _short(run_id))
        return True

    async def get_status(self, run_id: str) -> dict[str, Any]:
        run = self._runs.get(run_id)
        if run is not None:
            return {**run.snapshot(), "subscribers": self.streamer.subscriber_count(run_id)}
        stored = await self._load(run_id)
        if stored is None:
            raise RunNotFound(run_id)
        return {
            "run_id": stored.run_id,
            "session_id": stored.session_id,
            "status": (RunStatus.COMPLETED if stored.success else RunStatus.ERROR).value,
            "error": stored.error,
            "error_code": stored.error_code,
            "finished_at": stored.timestamp.isoformat(),
        }

    async def get_result(
        self,
        run_id: str,
        wait: bool = False,
        timeout: float | None = None,
    ) -> EnhancedReviewResult | None:
        """Composed result, or None while the run is still going.

        With ``wait=True`` block until the run finishes (or ``timeout`` elapses,
        which also yields None).
        """
        run = self._runs.get(run_id)
        if run is None:
            stored = await self._load(run_id)
            if stored is None:
                raise RunNotFound(run_id)
            return stored
        if wait and not run.is_finished:
            try:
                await asyncio.wait_for(run.done.wait(), timeout=timeout)
            except TimeoutError:
                return None
        return run.result

    async def subscribe(self, run_id: str) -> Subscription:
        """Live updates for a run from now on. Finished runs give an empty stream."""
        if run_id in self._runs:
            return self.streamer.subscribe(run_id)
        if await self._load(run_id) is None:
            raise RunNotFound(run_id)
        return self.streamer.subscribe(run_id)

    def list_runs(self, session_id: str | None = None) -> list[dict[str, Any]]:
        return [
            run.snapshot()
            for run in self._runs.values()
            if session_id is None or run.session_id == session_id
        ]

    async def shutdown(self) -> None:
        """Hard-cancel every in-flight run and wait for them to finish composing."""
        tasks = [
            run.task
            for run in self._runs.values()
            if run.task is not None and not run.task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("shutdown -> cancelled %s in-flight run(s)", len(tasks))
        # A task cancelled before its first step never reaches its own handlers.
        for run in list(self._runs.values()):
            if not run.is_finished:
                await self._finish(run, RunStatus.ERROR, "cancelled", RunCancelled.code)

    # -- run driver -------------------------------------------------------

    async def _drive(self, run: RunState) -> None:
        try:
            await self.record_audit(
                run.run_id,
                AuditEventType.RUN_STARTED,
                {"session_id": run.session_id, "tools": list(run.tools)},
            )
            await asyncio.wait_for(self._execute(run), timeout=self.run_timeout)
        except TimeoutError:
            logger.warning(
                "review run -> %s timed out after %ss", _short(run.run_id), self.run_timeout
            )
            await self._finish(run, RunStatus.ERROR, "timeout", RunTimeout.code)
        except RunCancelled:
            await self._finish(run, RunStatus.ERROR, "cancelled", RunCancelled.code)
        except asyncio.CancelledError:
            await self._finish(run, RunStatus.ERROR, "cancelled", RunCancelled.code)
            raise
        except EngineError as exc:
            logger.warning("review run -> %s failed: %s", _short(run.run_id), exc)
            await self._finish(run, RunStatus.ERROR, str(exc), exc.code)
        except Exception as exc:
            logger.exception("review run -> %s failed", _short(run.run_id))
            await self._finish(
                run, RunStatus.ERROR, str(exc) or type(exc).__name__, "responder_fault"
            )
        else:
            await self._finish(run, RunStatus.COMPLETED)

    async def _execute(self, run: RunState) -> None:
        self._publish(
            run,
            content={"message": "Review run accepted", "tools": list(run.tools)},
        )
        for stage in run.stages:
            calls = [call for call in stage.calls if call.name in run.tools]
            self._advance(
                run,
                stage.status,
                content={
                    "message": stage.description or f"Running {stage.status.value} stage",
                    "tools": [call.name for call in calls],
                },
            )
            await self._run_stage(run, stage, calls)
        self._advance(
            run,
            RunStatus.GENERATING,
            content={"message": "Generating AI review", "stage_results": len(run.stage_results)},
        )
        await self._generate(run)
        self._check_cancel(run)

    async def _run_stage(self, run: RunState, stage: StageSpec, calls: list[ToolCall]) -> None:
        dropped = len(stage.calls) - len(calls)
        if dropped:
            logger.debug(
                "review run -> %s %s skipping %s unselected call(s)",
                _short(run.run_id),
                stage.status,
                dropped,
            )
        feed = self.executor.execute_as_completed(calls, self.tool_timeout, allowed=run.tools)
        async with aclosing(feed) as results:
            async for index, result in results:
                result = result.model_copy(
                    update={
                        "metadata": {
                            **result.metadata,
                            "stage": stage.status.value,
                            "call_index": index,
                        }
                    }
                )
                run.stage_results.append(result)
                if result.success:
                    await self._remember(run, calls[index].name, result.content)

    async def _generate(self, run: RunState) -> None:
        definitions = [self.executor.registry.definition(name) for name in run.tools]
        prompt = run.request.prompt or build_review_prompt(run.request, definitions)
        context = await self._responder_context(run)
        depth = 0
        while True:
            self._check_cancel(run)
            response = await self._ask(prompt, context, definitions)
            run.ai_rounds += 1
            run.ai_content = response.content
            run.ai_metadata.update(response.metadata)
            if not response.tool_calls:
                break
            depth += 1
            if depth > self.max_tool_call_depth:
                raise ToolCallDepthExceeded(self.max_tool_call_depth)

            calls = list(response.tool_calls)
            run.ai_calls.extend(calls)
            results = await self.executor.execute_chain(
                calls, self.tool_timeout, allowed=run.tools
            )
            run.ai_results.extend(results)
            for call, result in zip(calls, results, strict=True):
                if result.success:
                    await self._remember(run, call.name, result.content)
            context = {
                **context,
                "tool_results": to_jsonable_python(
                    [
                        {"name": call.name, "parameters": call.parameters, **result.model_dump()}
                        for call, result in zip(run.ai_calls, run.ai_results, strict=True)
                    ],
                    fallback=str,
                ),
            }
        await self._notify_critical(run)

    async def _ask(
        self,
        prompt: str,
        context: dict[str, Any],
        definitions: list[ToolDefinition],
    ) -> AIResponse:
        try:
            return await asyncio.wait_for(
                self.responder.respond(prompt, context, definitions),
                timeout=self.ai_timeout,
            )
        except TimeoutError as exc:
            raise RunTimeout(f"AI responder timed out after {self.ai_timeout}s") from exc

    async def _notify_critical(self, run: RunState) -> None:
        if "notification" not in run.tools:
            return
        critical = [
            result
            for result in [*run.stage_results, *run.ai_results]
            if result.metadata.get("severity") == "critical"
        ]
        if not critical:
            return
        subject = run.request.title or run.run_id
        call = ToolCall(
            name="notification",
            parameters={
                "channel": self.critical_notification_channel,
                "message": f"Critical findings detected in code review: {subject}",
                "severity": "critical",
                "parameters": {
                    "title": "Critical Code Review Alert",
                    "run_id": run.run_id,
                    "findings": len(critical),
                },
            },
        )
        result = await self.executor.execute(call, self.tool_timeout, allowed=run.tools)
        run.extra_metadata["critical_notification"] = result.model_dump(mode="json")
        logger.info(
            "critical_notification -> run %s %s",
            _short(run.run_id),
            "sent" if result.success else f"failed: {result.error}",
        )

    # -- transitions ------------------------------------------------------

    def _check_cancel(self, run: RunState) -> None:
        if run.cancel_requested:
            raise RunCancelled("cancelled")

    def _advance(self, run: RunState, target: RunStatus, content: Any = None) -> None:
        self._check_cancel(run)
        validate_transition(run.status, target)
        run.status = target
        self._publish(run, content=content)

    def _publish(self, run: RunState, content: Any = None, error: str | None = None) -> None:
        run.sequence += 1
        update = ReviewUpdate(
            run_id=run.run_id,
            sequence=run.sequence,
            status=run.status,
            content=content,
            metadata={
                "stage": run.sequence + 1,
                "total_stages": run.total_transitions,
                "finding_count": run.finding_count(),
            },
            error=error,
        )
        run.last_update = update
        self.streamer.publish(run.run_id, update)

    async def _finish(
        self,
        run: RunState,
        status: RunStatus,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        if run.is_finished:
            return
        try:
            validate_transition(run.status, status)
            run.status = status
            run.error = error
            run.error_code = error_code
            run.finished_at = utc_now()
            try:
                run.result = compose(run)
            except ComposerInternal as exc:
                # Surfaced verbatim; subscribers still need a terminal update.
                logger.exception("compose_result -> failed for run %s", _short(run.run_id))
                run.status = RunStatus.ERROR
                run.error = error = str(exc)
                run.error_code = error_code = exc.code
            success = run.result is not None and run.result.success
            self._publish(
                run,
                content={
                    "message": "Review completed" if success else "Review failed",
                    "success": success,
                    "tool_results": len(run.stage_results),
                    "ai_tool_calls": len(run.ai_calls),
                },
                error=error,
            )

            await self.sessions.end_run(run.session_id)
            await self._persist(run.result)
            event = (
                AuditEventType.RUN_COMPLETED
                if run.status is RunStatus.COMPLETED
                else AuditEventType.RUN_FAILED
            )
            await self.record_audit(
                run.run_id,
                event,
                {"session_id": run.session_id, "error": error, "error_code": error_code},
            )
            logger.info(
                "review run -> %s %s%s",
                _short(run.run_id),
                run.status,
                f" ({error})" if error else "",
            )
            self._evict_finished()
        finally:
            # Waiters wake only once the result is persisted and audited.
            run.done.set()

    # -- context & persistence --------------------------------------------

    async def _remember(self, run: RunState, tool_name: str, content: Any) -> None:
        key = f"last_{tool_name}_result"
        run.context[key] = content
        try:
            await self.sessions.add_context(run.session_id, key, content)
        except (SessionClosed, SessionNotFound):
            logger.debug(
                "review run -> %s session gone, context %s kept on run", _short(run.run_id), key
            )

    async def _responder_context(self, run: RunState) -> dict[str, Any]:
        try:
            session_context = await self.sessions.get_context(run.session_id)
        except (SessionClosed, SessionNotFound):
            session_context = {}
        context = {
            **session_context,
            **run.context,
            **run.request.context,
            "options": {
                "focus_areas": list(run.request.focus_areas),
                "severity_threshold": run.request.severity_threshold.value,
                "include_suggestions": run.request.include_suggestions,
            },
            "stage_results": [result.model_dump() for result in run.stage_results],
        }
        return to_jsonable_python(context, fallback=str)

    async def _persist(self, result: EnhancedReviewResult | None) -> None:
        if self.store is None or result is None:
            return
        try:
            await self.store.save(result)
        except Exception:
            logger.exception("persist_result -> failed for run %s", _short(result.run_id))

    async def _load(self, run_id: str) -> EnhancedReviewResult | None:
        if self.store is None:
            return None
        try:
            return await self.store.load(run_id)
        except Exception:
            logger.exception("load_result -> failed for run %s", _short(run_id))
            return None

    async def record_audit(
        self,
        subject_id: str,
        event_type: AuditEventType,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.store is None:
            return
        try:
            await self.store.record(subject_id, event_type, metadata)
        except Exception:
            logger.exception("record_event -> %s failed for %s", event_type, _short(subject_id))

    async def _on_session_closed(self, info: SessionInfo, reason: str) -> None:
        for run in self._runs.values():
            if run.session_id == info.session_id and not run.is_finished:
                run.cancel_requested = True
        await self.record_audit(info.session_id, AuditEventType.SESSION_CLOSED, {"reason": reason})

    def _evict_finished(self) -> None:
        finished = [run_id for run_id, run in self._runs.items() if run.is_finished]
        excess = len(finished) - self.max_finished_runs
        for run_id in finished[: max(0, excess)]:
            del self._runs[run_id]
