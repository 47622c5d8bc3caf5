"""Tool execution with structural parameter validation and per-call timeouts."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Collection, Sequence
from typing import Any

from mcp_review_engine.errors import InvalidParameters, ToolFault, ToolTimeout, UnknownTool
from mcp_review_engine.models import ToolCall, ToolResult, utc_now
from mcp_review_engine.registry import ToolRegistry

logger = logging.getLogger("mcp_review_engine")

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


def _type_matches(expected: str, value: Any) -> bool:
    accepted = _JSON_TYPES.get(expected)
    if accepted is None:
        return True
    # bool is an int subclass; JSON keeps them apart.
    if isinstance(value, bool) and expected in ("integer", "number"):
        return False
    return isinstance(value, accepted)


def validate_parameters(
    schema: dict[str, Any],
    parameters: Any,
    path: str = "",
) -> list[str]:
    """Structurally check parameters against a JSON-schema-like description.

    Only required keys, enumerated values and primitive property types are
    checked. Returns a list of problems; empty means valid.
    """
    if not isinstance(parameters, dict):
        return [f"{path or 'parameters'} must be an object"]

    problems: list[str] = []
    for key in schema.get("required", []):
        if parameters.get(key) is None:
            problems.append(f"missing required parameter: {path}{key}")

    properties: dict[str, Any] = schema.get("properties", {})
    for key, value in parameters.items():
        spec = properties.get(key)
        if spec is None or value is None:
            continue
        expected = spec.get("type")
        if isinstance(expected, str) and not _type_matches(expected, value):
            problems.append(f"{path}{key} must be of type {expected}")
            continue
        allowed = spec.get("enum")
        if allowed is not None and value not in allowed:
            problems.append(f"{path}{key} must be one of {list(allowed)}, got {value!r}")
        if expected == "object" and "properties" in spec:
            problems.extend(validate_parameters(spec, value, path=f"{path}{key}."))
    return problems


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ToolExecutor:
    """Invokes registered tools and always returns a ToolResult.

    A tool that raises, hangs past its timeout, is unknown, or receives
    invalid parameters produces ``success=False``; nothing is propagated to
    the caller except task cancellation.
    """

    def __init__(self, registry: ToolRegistry, default_timeout: float | None = None) -> None:
        self.registry = registry
        self.default_timeout = default_timeout

    async def execute(
        self,
        call: ToolCall,
        timeout: float | None = None,
        *,
        allowed: Collection[str] | None = None,
    ) -> ToolResult:
        started = time.monotonic()
        base_meta: dict[str, Any] = {"tool": call.name}

        if allowed is not None and call.name not in allowed:
            logger.info("execute_tool -> %s rejected (not in session)", call.name)
            return ToolResult.failure(
                f"tool not available in session: {call.name}",
                metadata={
                    **base_meta,
                    "error_code": "invalid_tool_selection",
                    "duration_ms": 0,
                },
            )

        try:
            tool = self.registry.get(call.name)
            definition = self.registry.definition(call.name)
        except UnknownTool as exc:
            logger.info("execute_tool -> %s unknown", call.name)
            return ToolResult.failure(
                f"unknown tool: {call.name}",
                metadata={**base_meta, "error_code": exc.code, "duration_ms": 0},
            )

        problems = validate_parameters(definition.input_schema, call.parameters)
        if problems:
            logger.info("execute_tool -> %s invalid parameters: %s", call.name, "; ".join(problems))
            return ToolResult.failure(
                "invalid parameters",
                metadata={
                    **base_meta,
                    "error_code": InvalidParameters.code,
                    "problems": problems,
                    "duration_ms": _elapsed_ms(started),
                },
            )

        effective_timeout = timeout if timeout is not None else self.default_timeout
        try:
            raw = await asyncio.wait_for(
                tool.invoke(dict(call.parameters)),
                timeout=effective_timeout,
            )
        except TimeoutError:
            logger.warning(
                "execute_tool -> %s timed out after %ss", call.name, effective_timeout
            )
            return ToolResult.failure(
                "timeout",
                metadata={
                    **base_meta,
                    "error_code": ToolTimeout.code,
                    "timeout_seconds": effective_timeout,
                    "duration_ms": _elapsed_ms(started),
                },
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("execute_tool -> %s failed: %s", call.name, exc)
            return ToolResult.failure(
                str(exc) or type(exc).__name__,
                metadata={
                    **base_meta,
                    "error_code": ToolFault.code,
                    "exception": type(exc).__name__,
                    "duration_ms": _elapsed_ms(started),
                },
            )

        duration_ms = _elapsed_ms(started)
        if isinstance(raw, ToolResult):
            result = raw.model_copy(
                update={
                    "metadata": {**raw.metadata, **base_meta, "duration_ms": duration_ms},
                    "timestamp": utc_now(),
                }
            )
        else:
            result = ToolResult.ok(raw, metadata={**base_meta, "duration_ms": duration_ms})
        logger.info(
            "execute_tool -> %s %s (%sms)",
            call.name,
            "ok" if result.success else f"error: {result.error}",
            duration_ms,
        )
        return result

    async def execute_chain(
        self,
        calls: Sequence[ToolCall],
        timeout: float | None = None,
        *,
        allowed: Collection[str] | None = None,
    ) -> list[ToolResult]:
        """Run calls concurrently; results come back in call-list order."""
        if not calls:
            return []
        return list(
            await asyncio.gather(
                *(self.execute(call, timeout, allowed=allowed) for call in calls)
            )
        )

    async def execute_as_completed(
        self,
        calls: Sequence[ToolCall],
        timeout: float | None = None,
        *,
        allowed: Collection[str] | None = None,
    ) -> AsyncIterator[tuple[int, ToolResult]]:
        """Run calls concurrently, yielding ``(call_index, result)`` as each finishes."""

        async def _indexed(index: int, call: ToolCall) -> tuple[int, ToolResult]:
            return index, await self.execute(call, timeout, allowed=allowed)

        tasks = [asyncio.create_task(_indexed(i, call)) for i, call in enumerate(calls)]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
