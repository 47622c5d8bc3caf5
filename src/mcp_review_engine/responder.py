"""AI responder boundary: the pluggable narrative generator that may request tools."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import httpx

from mcp_review_engine.models import AIResponse, ToolCall, ToolDefinition

logger = logging.getLogger("mcp_review_engine")

COMPREHENSIVE_REVIEW_PATH = "/api/ai/comprehensive-review"


class AIResponder(ABC):
    """Produces review narrative; may ask for tool calls before finishing.

    The pipeline calls ``respond`` repeatedly: every round that returns
    ``tool_calls`` gets those calls executed and the results placed into
    ``context["tool_results"]`` for the next round. A round without tool calls
    is final.
    """

    @abstractmethod
    async def respond(
        self,
        prompt: str,
        context: dict[str, Any],
        available_tools: Sequence[ToolDefinition],
    ) -> AIResponse:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _parse_tool_calls(raw_calls: Any) -> list[ToolCall]:
    if not raw_calls:
        return []
    calls: list[ToolCall] = []
    for raw in raw_calls:
        if not isinstance(raw, dict) or not raw.get("name"):
            logger.warning("ai_responder -> dropping malformed tool call: %r", raw)
            continue
        parameters = raw.get("parameters") or raw.get("arguments") or {}
        calls.append(ToolCall(name=str(raw["name"]), parameters=dict(parameters)))
    return calls


class HttpAIResponder(AIResponder):
    """Calls a remote review model over HTTP.

    Request body: ``{"prompt", "context", "tools"}``; response body:
    ``{"content", "toolCalls" | "tool_calls", "metadata"}``.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=endpoint,
            headers=headers,
            timeout=timeout,
        )

    async def respond(
        self,
        prompt: str,
        context: dict[str, Any],
        available_tools: Sequence[ToolDefinition],
    ) -> AIResponse:
        body = {
            "prompt": prompt,
            "context": context,
            "tools": [tool.model_dump(mode="json") for tool in available_tools],
        }
        response = await self._client.post(COMPREHENSIVE_REVIEW_PATH, json=body)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("AI responder returned a non-object payload")
        raw_calls = payload.get("toolCalls", payload.get("tool_calls"))
        return AIResponse(
            content=str(payload.get("content") or ""),
            tool_calls=_parse_tool_calls(raw_calls),
            metadata=dict(payload.get("metadata") or {}),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
