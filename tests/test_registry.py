"""Tests for the tool registry and the Tool capability interface."""

from __future__ import annotations

from typing import Any

import pytest

from mcp_review_engine.errors import DuplicateTool, UnknownTool
from mcp_review_engine.registry import FunctionTool, Tool, ToolRegistry


async def _noop(parameters: dict[str, Any]) -> None:
    return None


class _ClassTool(Tool):
    name = "class-tool"
    description = "Declared as a subclass"
    input_schema = {"type": "object", "properties": {"x": {"type": "integer"}}}

    async def invoke(self, parameters: dict[str, Any]) -> Any:
        return parameters.get("x")


class TestToolRegistry:
    def test_register_returns_definition(self) -> None:
        registry = ToolRegistry()
        definition = registry.register(FunctionTool("a", _noop, description="first"))
        assert definition.name == "a"
        assert definition.description == "first"
        assert definition.input_schema == {"type": "object", "properties": {}}

    def test_duplicate_name_rejected(self) -> None:
        registry = ToolRegistry()
        registry.register(FunctionTool("a", _noop))
        with pytest.raises(DuplicateTool) as exc_info:
            registry.register(FunctionTool("a", _noop))
        assert exc_info.value.code == "duplicate_tool"
        assert len(registry) == 1

    def test_get_unknown_raises(self) -> None:
        registry = ToolRegistry()
        with pytest.raises(UnknownTool):
            registry.get("missing")
        with pytest.raises(UnknownTool):
            registry.definition("missing")

    def test_list_keeps_registration_order(self) -> None:
        registry = ToolRegistry()
        for name in ("zeta", "alpha", "mid"):
            registry.register(FunctionTool(name, _noop))
        assert registry.names() == ("zeta", "alpha", "mid")
        assert [d.name for d in registry.list()] == ["zeta", "alpha", "mid"]
        assert "alpha" in registry
        assert "nope" not in registry

    def test_definition_schema_is_a_copy(self) -> None:
        tool = _ClassTool()
        registry = ToolRegistry()
        registry.register(tool)
        tool.input_schema["properties"]["y"] = {"type": "string"}
        try:
            assert "y" not in registry.definition("class-tool").input_schema["properties"]
        finally:
            del tool.input_schema["properties"]["y"]

    async def test_subclass_tool_invokes(self) -> None:
        registry = ToolRegistry()
        registry.register(_ClassTool())
        assert await registry.get("class-tool").invoke({"x": 7}) == 7
