"""Shared test fixtures for localpilot tests."""

import asyncio
import json

import pytest
import pytest_asyncio

from localpilot.config import LmStudioOptions, OllamaOptions
from localpilot.retry import RetryOptions


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

LMSTUDIO_URL = "http://localhost:1234"
LMSTUDIO_CHAT_URL = f"{LMSTUDIO_URL}/v1/chat/completions"
OLLAMA_URL = "http://localhost:11434"
OLLAMA_CHAT_URL = f"{OLLAMA_URL}/api/chat"

MOCK_MODEL = "qwen2.5-7b-instruct"
MOCK_GPT_OSS_MODEL = "openai/gpt-oss-20b"
MOCK_OLLAMA_MODEL = "llama3.2:3b"

SSE_HEADERS = {"content-type": "text/event-stream"}
NDJSON_HEADERS = {"content-type": "application/x-ndjson"}


def sse_frame(delta: dict = None, usage: dict = None) -> str:
    """One `data:` line for an OpenAI chat.completion.chunk."""
    frame = {
        "id": "chatcmpl-123",
        "object": "chat.completion.chunk",
        "created": 1699000000,
        "model": MOCK_MODEL,
        "choices": [{"index": 0, "delta": delta, "finish_reason": None}] if delta is not None else [],
    }
    if usage is not None:
        frame["usage"] = usage
    return f"data: {json.dumps(frame, ensure_ascii=False)}\n\n"


def sse_body(*frames: str, done: bool = True) -> bytes:
    body = "".join(frames)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


def text_stream(*pieces: str, usage: dict = None) -> bytes:
    """SSE body streaming `pieces` as content deltas, then optional usage."""
    frames = [sse_frame({"role": "assistant", "content": ""})]
    frames += [sse_frame({"content": piece}) for piece in pieces]
    if usage is not None:
        frames.append(sse_frame(usage=usage))
    return sse_body(*frames)


def ollama_line(content: str = "", thinking: str = None, done: bool = False, **counts) -> str:
    """One NDJSON line of an Ollama /api/chat stream."""
    message = {"role": "assistant", "content": content}
    if thinking is not None:
        message["thinking"] = thinking
    part = {
        "model": MOCK_OLLAMA_MODEL,
        "created_at": "2024-01-01T00:00:00Z",
        "message": message,
        "done": done,
        **counts,
    }
    return json.dumps(part) + "\n"


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def fast_retry():
    """Three attempts, no backoff sleep, every error retried."""
    return RetryOptions(max_retries=3, base_delay=0, max_delay=0, retry_all_errors=True)


@pytest.fixture
def lmstudio_options():
    return LmStudioOptions(base_url=LMSTUDIO_URL, model_id=MOCK_MODEL)


@pytest.fixture
def ollama_options():
    return OllamaOptions(base_url=OLLAMA_URL, model_id=MOCK_OLLAMA_MODEL)


@pytest.fixture
def retry_calls():
    """Records (attempt, max, delay_ms, error) from a retry observer."""
    calls = []

    def observer(attempt, max_retries, delay_ms, error):
        calls.append((attempt, max_retries, delay_ms, error))

    observer.calls = calls
    return observer


async def collect(stream) -> list:
    """Drain an async stream into a list."""
    return [chunk async for chunk in stream]


@pytest_asyncio.fixture
async def stalled_server(request):
    """
    Local HTTP server that accepts a request and never finishes answering.

    Parametrize indirectly with "headers" (no response at all, the default)
    or "body" (status line and headers, then nothing). Yields the base URL.
    """
    stall = getattr(request, "param", "headers")

    async def handle(reader, writer):
        try:
            await reader.readuntil(b"\r\n\r\n")
            if stall == "body":
                writer.write(
                    b"HTTP/1.1 200 OK\r\n"
                    b"content-type: text/event-stream\r\n"
                    b"transfer-encoding: chunked\r\n\r\n"
                )
                await writer.drain()
            # Hold the connection until the client goes away
            await asyncio.wait_for(reader.read(), timeout=5)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}"
    server.close()
    await server.wait_closed()
