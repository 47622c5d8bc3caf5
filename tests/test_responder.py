"""Tests for the HTTP AI responder."""

from __future__ import annotations

import json

import httpx
import pytest

from mcp_review_engine.models import ToolDefinition
from mcp_review_engine.responder import COMPREHENSIVE_REVIEW_PATH, HttpAIResponder


def _responder(handler) -> HttpAIResponder:
    client = httpx.AsyncClient(
        base_url="http://ai.test",
        transport=httpx.MockTransport(handler),
    )
    return HttpAIResponder("http://ai.test", client=client)


class TestHttpAIResponder:
    async def test_posts_prompt_context_and_tools(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"content": "LGTM", "metadata": {"model": "m1"}})

        responder = _responder(handler)
        tools = [ToolDefinition(name="git", description="Git access")]
        response = await responder.respond("Review this", {"pr": 1}, tools)

        assert response.content == "LGTM"
        assert response.tool_calls == []
        assert response.metadata == {"model": "m1"}
        request = captured[0]
        assert request.url.path == COMPREHENSIVE_REVIEW_PATH
        body = json.loads(request.content)
        assert body["prompt"] == "Review this"
        assert body["context"] == {"pr": 1}
        assert body["tools"][0]["name"] == "git"

    async def test_parses_tool_calls_in_either_spelling(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "content": "need data",
                    "toolCalls": [
                        {"name": "git", "parameters": {"command": "diff"}},
                        {"name": "database", "arguments": {"query": "quality_trends"}},
                        {"parameters": {}},
                        "garbage",
                    ],
                },
            )

        response = await _responder(handler).respond("p", {}, [])
        assert [call.name for call in response.tool_calls] == ["git", "database"]
        assert response.tool_calls[1].parameters == {"query": "quality_trends"}

    async def test_http_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": "overloaded"})

        with pytest.raises(httpx.HTTPStatusError):
            await _responder(handler).respond("p", {}, [])

    async def test_non_object_payload_rejected(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["not", "an", "object"])

        with pytest.raises(ValueError, match="non-object payload"):
            await _responder(handler).respond("p", {}, [])

    async def test_api_key_sent_as_bearer(self) -> None:
        responder = HttpAIResponder("http://ai.test", "secret-key")
        try:
            assert responder._client.headers["Authorization"] == "Bearer secret-key"
        finally:
            await responder.aclose()
