"""Tests for OllamaHandler, mocked at the httpx boundary under the ollama SDK."""

import asyncio
import json

import httpx
import pytest
import respx

from localpilot.config import OllamaOptions
from localpilot.messages import ChatMessage, ToolResultBlock, ToolUseBlock
from localpilot.providers.ollama import OLLAMA_MODEL_INFO, OllamaError, OllamaHandler
from localpilot.stream import ReasoningChunk, TextChunk, UsageChunk
from tests.conftest import (
    MOCK_OLLAMA_MODEL,
    NDJSON_HEADERS,
    OLLAMA_CHAT_URL,
    OLLAMA_URL,
    collect,
    ollama_line,
)

MESSAGES = [ChatMessage(role="user", content="Hello?")]


def ndjson_response(*lines: str) -> httpx.Response:
    return httpx.Response(200, content="".join(lines).encode(), headers=NDJSON_HEADERS)


def basic_stream() -> httpx.Response:
    return ndjson_response(
        ollama_line("Hel"),
        ollama_line("lo"),
        ollama_line("", done=True, prompt_eval_count=7, eval_count=2),
    )


def request_json(route) -> dict:
    return json.loads(route.calls.last.request.content)


# ─────────────────────────────────────────────────────────────────────
# STREAMING
# ─────────────────────────────────────────────────────────────────────

class TestOllamaStreaming:
    """Tests for create_message() against /api/chat."""

    def test_model_info(self, ollama_options):
        model = OllamaHandler(ollama_options).get_model()
        assert model.id == MOCK_OLLAMA_MODEL
        assert model.info == OLLAMA_MODEL_INFO
        assert model.info.supports_images is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_streams_text_then_usage(self, ollama_options, fast_retry):
        respx.post(OLLAMA_CHAT_URL).mock(return_value=basic_stream())
        handler = OllamaHandler(ollama_options, retry_options=fast_retry)

        chunks = await collect(handler.create_message("Be brief.", MESSAGES))

        assert chunks == [
            TextChunk(text="Hel"),
            TextChunk(text="lo"),
            UsageChunk(input_tokens=7, output_tokens=2),
        ]
        assert handler.get_last_usage() == UsageChunk(input_tokens=7, output_tokens=2)

    @pytest.mark.asyncio
    @respx.mock
    async def test_request_body(self, ollama_options, fast_retry):
        """System prompt first, default context size, thinking off."""
        route = respx.post(OLLAMA_CHAT_URL).mock(return_value=basic_stream())
        handler = OllamaHandler(ollama_options, retry_options=fast_retry)

        await collect(handler.create_message("Be brief.", MESSAGES))

        body = request_json(route)
        assert body["model"] == MOCK_OLLAMA_MODEL
        assert body["stream"] is True
        assert body["options"]["num_ctx"] == 32768
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert body["messages"][1]["content"] == "Hello?"
        assert not body.get("think")

    @pytest.mark.asyncio
    @respx.mock
    async def test_thinking_and_context_size(self, fast_retry):
        route = respx.post(OLLAMA_CHAT_URL).mock(return_value=ndjson_response(
            ollama_line("", thinking="Let me think"),
            ollama_line("Answer", done=True, prompt_eval_count=3, eval_count=1),
        ))
        options = OllamaOptions(
            base_url=OLLAMA_URL,
            model_id=MOCK_OLLAMA_MODEL,
            num_ctx=8192,
            thinking_budget_tokens=1024,
        )
        handler = OllamaHandler(options, retry_options=fast_retry)

        chunks = await collect(handler.create_message("", MESSAGES))

        body = request_json(route)
        assert body["think"] is True
        assert body["options"]["num_ctx"] == 8192
        assert chunks == [
            ReasoningChunk(text="Let me think"),
            TextChunk(text="Answer"),
            UsageChunk(input_tokens=3, output_tokens=1),
        ]

    @pytest.mark.asyncio
    @respx.mock
    async def test_api_key_sent_as_bearer(self, fast_retry):
        route = respx.post(OLLAMA_CHAT_URL).mock(return_value=basic_stream())
        options = OllamaOptions(base_url=OLLAMA_URL, model_id=MOCK_OLLAMA_MODEL, api_key="secret")
        handler = OllamaHandler(options, retry_options=fast_retry)

        await collect(handler.create_message("", MESSAGES))

        assert route.calls.last.request.headers["authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    @respx.mock
    async def test_tool_history_uses_tool_name(self, ollama_options, fast_retry):
        route = respx.post(OLLAMA_CHAT_URL).mock(return_value=basic_stream())
        handler = OllamaHandler(ollama_options, retry_options=fast_retry)
        messages = [
            ChatMessage(role="user", content="Weather?"),
            ChatMessage(role="assistant", content=[ToolUseBlock(id="t1", name="get_weather", input={"city": "Oslo"})]),
            ChatMessage(role="user", content=[ToolResultBlock(tool_use_id="t1", content="Sunny")]),
        ]

        await collect(handler.create_message("", messages))

        wire = request_json(route)["messages"]
        assert wire[2]["tool_calls"][0]["function"]["name"] == "get_weather"
        assert wire[3]["role"] == "tool"
        assert wire[3]["tool_name"] == "get_weather"
        assert wire[3]["content"] == "Sunny"


# ─────────────────────────────────────────────────────────────────────
# ERRORS
# ─────────────────────────────────────────────────────────────────────

class TestOllamaErrors:
    """Tests for error translation and retry."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_carries_status(self, ollama_options, fast_retry):
        route = respx.post(OLLAMA_CHAT_URL).mock(
            return_value=httpx.Response(500, json={"error": "model not loaded"})
        )
        handler = OllamaHandler(ollama_options, retry_options=fast_retry)

        with pytest.raises(OllamaError) as exc_info:
            await collect(handler.create_message("", MESSAGES))

        assert exc_info.value.status_code == 500
        assert "model not loaded" in str(exc_info.value)
        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeout_message_names_seconds(self, fast_retry):
        respx.post(OLLAMA_CHAT_URL).mock(side_effect=httpx.ReadTimeout("timed out"))
        options = OllamaOptions(base_url=OLLAMA_URL, model_id=MOCK_OLLAMA_MODEL, request_timeout_ms=5000)
        handler = OllamaHandler(options, retry_options=fast_retry)

        with pytest.raises(OllamaError, match="timed out after 5 seconds"):
            await collect(handler.create_message("", MESSAGES))

    @pytest.mark.asyncio
    @respx.mock
    async def test_retry_then_success(self, ollama_options, fast_retry, retry_calls):
        route = respx.post(OLLAMA_CHAT_URL).mock(side_effect=[
            httpx.Response(503, json={"error": "busy"}),
            basic_stream(),
        ])
        handler = OllamaHandler(ollama_options, retry_options=fast_retry, on_retry_attempt=retry_calls)

        chunks = await collect(handler.create_message("", MESSAGES))

        assert chunks[0] == TextChunk(text="Hel")
        assert route.call_count == 2
        assert len(retry_calls.calls) == 1
        assert isinstance(retry_calls.calls[0][3], OllamaError)


# ─────────────────────────────────────────────────────────────────────
# CANCELLATION
# ─────────────────────────────────────────────────────────────────────

class TestOllamaCancellation:
    """Tests for cancel_active_request()."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_cancel_before_iteration(self, ollama_options, fast_retry):
        route = respx.post(OLLAMA_CHAT_URL).mock(return_value=basic_stream())
        handler = OllamaHandler(ollama_options, retry_options=fast_retry)

        stream = handler.create_message("", MESSAGES)
        handler.cancel_active_request()

        assert await collect(stream) == []
        assert route.call_count == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_cancel_mid_stream(self, ollama_options, fast_retry):
        respx.post(OLLAMA_CHAT_URL).mock(return_value=basic_stream())
        handler = OllamaHandler(ollama_options, retry_options=fast_retry)

        received = []
        async for chunk in handler.create_message("", MESSAGES):
            received.append(chunk)
            handler.cancel_active_request()

        assert received == [TextChunk(text="Hel")]
        assert handler.get_last_usage() is None

    @pytest.mark.parametrize("stalled_server", ["headers", "body"], indirect=True)
    @pytest.mark.asyncio
    async def test_cancel_while_model_is_loading(self, stalled_server, fast_retry):
        """A request stuck before its first part ends as soon as it is cancelled."""
        options = OllamaOptions(base_url=stalled_server, model_id=MOCK_OLLAMA_MODEL)
        handler = OllamaHandler(options, retry_options=fast_retry)
        loop = asyncio.get_running_loop()
        loop.call_later(0.2, handler.cancel_active_request)

        started = loop.time()
        chunks = await asyncio.wait_for(collect(handler.create_message("", MESSAGES)), timeout=3)

        assert chunks == []
        assert handler.get_last_usage() is None
        assert loop.time() - started < 1.5
