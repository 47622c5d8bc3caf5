"""Tool capability interface and the process-wide tool registry."""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from mcp_review_engine.errors import DuplicateTool, UnknownTool
from mcp_review_engine.models import ToolDefinition


class Tool(ABC):
    """A named capability invocable with structured parameters.

    ``invoke`` may return a ToolResult (kept as-is) or any other value, which
    the executor wraps as successful content. Raising signals a tool fault.
    """

    name: str
    description: str = ""
    input_schema: dict[str, Any] = {}

    @abstractmethod
    async def invoke(self, parameters: dict[str, Any]) -> Any:
        raise NotImplementedError

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=copy.deepcopy(self.input_schema),
        )


class FunctionTool(Tool):
    """Adapts a plain async function into a Tool."""

    def __init__(
        self,
        name: str,
        fn: Callable[[dict[str, Any]], Awaitable[Any]],
        *,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.input_schema = input_schema or {"type": "object", "properties": {}}
        self._fn = fn

    async def invoke(self, parameters: dict[str, Any]) -> Any:
        return await self._fn(parameters)


class ToolRegistry:
    """Name -> Tool mapping, ordered by registration time.

    Registration happens at startup; after that the registry is only read, so
    lookups take no lock.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._definitions: dict[str, ToolDefinition] = {}

    def register(self, tool: Tool) -> ToolDefinition:
        if tool.name in self._tools:
            raise DuplicateTool(tool.name)
        definition = tool.definition()
        self._tools[tool.name] = tool
        self._definitions[tool.name] = definition
        return definition

    def get(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool(name)
        return tool

    def definition(self, name: str) -> ToolDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise UnknownTool(name)
        return definition

    def list(self) -> tuple[ToolDefinition, ...]:
        return tuple(self._definitions.values())

    def names(self) -> tuple[str, ...]:
        return tuple(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
