"""Tests for the completion gateway.

These tests use httpx's MockTransport to simulate the completion service.
No real server connection is needed — everything is faked.
"""

import json

import httpx
import pytest

from clinical_graph.completion_client import (
    CompletionAPIError,
    CompletionClient,
    CompletionConfigError,
)

# --- Test helpers ---


def _chat_response(content: object = "chat answer", model: str = "served-model") -> dict[str, object]:
    """Build a fake /chat/completions response."""
    return {"model": model, "choices": [{"message": {"role": "assistant", "content": content}}]}


def _make_client(handler, **kwargs: object) -> CompletionClient:  # type: ignore[no-untyped-def]
    """Create a client whose HTTP layer is the given mock handler."""
    defaults: dict[str, object] = {
        "base_url": "https://llm.test/v1",
        "api_key": "test-key",
        "model": "test-model",
    }
    defaults.update(kwargs)
    client = CompletionClient(**defaults)  # type: ignore[arg-type]
    client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


# --- Tier 1 ---


class TestChatTier:
    """The chat-style call is tried first."""

    @pytest.mark.asyncio
    async def test_chat_success(self) -> None:
        """A usable chat response is returned without touching /responses."""
        seen: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json=_chat_response())

        client = _make_client(handler)
        completion = await client.complete("What is HTN?")

        assert completion.content == "chat answer"
        assert completion.model == "served-model"
        assert seen == ["/v1/chat/completions"]

        await client.close()

    @pytest.mark.asyncio
    async def test_chat_payload_shape(self) -> None:
        """The chat call sends model, messages, temperature and max_tokens."""
        captured: dict[str, object] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            captured.update(json.loads(request.content))
            captured["auth"] = request.headers["authorization"]
            return httpx.Response(200, json=_chat_response())

        client = _make_client(handler)
        await client.complete("hello", temperature=0.2, max_tokens=99, system_prompt="sys")

        assert captured["model"] == "test-model"
        assert captured["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hello"},
        ]
        assert captured["temperature"] == 0.2
        assert captured["max_tokens"] == 99
        assert captured["auth"] == "Bearer test-key"

        await client.close()


# --- Tier 2 fallback ---


class TestResponsesFallback:
    """Any chat failure falls through to the /responses call."""

    @pytest.mark.asyncio
    async def test_chat_error_falls_back_to_output_text(self) -> None:
        captured: dict[str, object] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/chat/completions"):
                return httpx.Response(500, text="boom")
            captured.update(json.loads(request.content))
            return httpx.Response(200, json={"output_text": "fallback answer"})

        client = _make_client(handler)
        completion = await client.complete("q", max_tokens=123)

        assert completion.content == "fallback answer"
        assert completion.model == "test-model"
        assert captured == {
            "model": "test-model",
            "input": "q",
            "temperature": 0.7,
            "max_output_tokens": 123,
        }

        await client.close()

    @pytest.mark.asyncio
    async def test_empty_chat_content_falls_back_to_nested_output(self) -> None:
        """An empty or non-string chat body counts as a failure too."""

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/chat/completions"):
                return httpx.Response(200, json=_chat_response(content=""))
            return httpx.Response(
                200, json={"output": [{"content": [{"type": "output_text", "text": "nested"}]}]}
            )

        client = _make_client(handler)
        completion = await client.complete("q")
        assert completion.content == "nested"

        await client.close()

    @pytest.mark.asyncio
    async def test_transport_error_falls_back(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/chat/completions"):
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200, json={"output_text": "ok"})

        client = _make_client(handler)
        completion = await client.complete("q")
        assert completion.content == "ok"

        await client.close()


# --- Failures ---


class TestFailures:
    """Configuration and double-failure errors."""

    @pytest.mark.asyncio
    async def test_missing_key_raises_before_any_request(self) -> None:
        calls: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, json=_chat_response())

        client = _make_client(handler, api_key="")
        with pytest.raises(CompletionConfigError, match="Missing"):
            await client.complete("q")
        assert calls == []

        await client.close()

    @pytest.mark.asyncio
    async def test_both_tiers_fail_reports_both_statuses(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/chat/completions"):
                return httpx.Response(503, text="unavailable")
            return httpx.Response(404, text="no such endpoint")

        client = _make_client(handler)
        with pytest.raises(CompletionAPIError, match="503/404") as excinfo:
            await client.complete("q")
        assert excinfo.value.status_code == 503
        assert excinfo.value.fallback_status_code == 404
        assert "no such endpoint" in excinfo.value.detail

        await client.close()

    @pytest.mark.asyncio
    async def test_fallback_without_text_raises(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/chat/completions"):
                return httpx.Response(400, text="bad")
            return httpx.Response(200, json={"output": []})

        client = _make_client(handler)
        with pytest.raises(CompletionAPIError, match="no text"):
            await client.complete("q")

        await client.close()

    @pytest.mark.asyncio
    async def test_transport_errors_on_both_tiers(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out")

        client = _make_client(handler)
        with pytest.raises(CompletionAPIError, match="0/0"):
            await client.complete("q")

        await client.close()
