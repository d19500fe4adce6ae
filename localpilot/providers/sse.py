"""
Server-Sent-Events decoding for OpenAI-compatible chat streams.

The decoder is fed raw bytes in whatever pieces the transport hands over
and only emits a frame once its terminating newline has arrived, so the
result does not depend on where the chunk boundaries fall. Lines that are
not valid JSON are skipped: local servers can emit partial frames.
"""

import codecs
import json
import logging
from typing import Any, Optional

from localpilot.config import SSE_DATA_PREFIX, SSE_DONE_MARKER
from localpilot.stream import ReasoningChunk, TextChunk, UsageChunk

logger = logging.getLogger(__name__)


class SSEFrameDecoder:
    """Incremental bytes -> JSON frame decoder for `data: {...}` lines."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        """Consume bytes and return every frame completed by them."""
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        frames = []
        for line in lines:
            frame = self._parse_line(line.strip())
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[dict[str, Any]]:
        """
        Parse whatever is left after the stream ended.

        The last frame may arrive without a trailing newline. The leftover
        is treated as a single line.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        leftover = self._buffer.strip()
        self._buffer = ""
        if not leftover.startswith(SSE_DATA_PREFIX):
            return []
        frame = self._parse_line(leftover)
        return [frame] if frame is not None else []

    def _parse_line(self, line: str) -> Optional[dict[str, Any]]:
        if self.done or not line.startswith(SSE_DATA_PREFIX):
            return None
        payload = line[len(SSE_DATA_PREFIX):].strip()
        if payload == SSE_DONE_MARKER:
            self.done = True
            return None
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed SSE frame: {payload[:200]}")
            return None
        return frame if isinstance(frame, dict) else None


# ─────────────────────────────────────────────────────────────────────
# FRAME EXTRACTION
# ─────────────────────────────────────────────────────────────────────

def extract_delta(frame: dict[str, Any]) -> dict[str, Any]:
    choices = frame.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return {}
    return choices[0].get("delta") or {}


def extract_reasoning(delta: dict[str, Any]) -> Optional[str]:
    """
    Reasoning text from a delta, in priority order:

    1. delta.reasoning as a string
    2. delta.reasoning.content
    3. delta.reasoning_content
    """
    if not delta:
        return None
    reasoning = delta.get("reasoning")
    if isinstance(reasoning, str) and reasoning:
        return reasoning
    if isinstance(reasoning, dict):
        content = reasoning.get("content")
        if isinstance(content, str) and content:
            return content
    reasoning_content = delta.get("reasoning_content")
    if isinstance(reasoning_content, str) and reasoning_content:
        return reasoning_content
    return None


def extract_usage(frame: dict[str, Any]) -> Optional[UsageChunk]:
    """UsageChunk from frame["usage"] when it reports input or output tokens."""
    usage = frame.get("usage")
    if not isinstance(usage, dict):
        return None
    if usage.get("prompt_tokens") is None and usage.get("completion_tokens") is None:
        return None
    details = usage.get("prompt_tokens_details") or {}
    return UsageChunk(
        input_tokens=usage.get("prompt_tokens") or 0,
        output_tokens=usage.get("completion_tokens") or 0,
        cache_read_tokens=details.get("cached_tokens") or 0,
        cache_write_tokens=usage.get("prompt_cache_miss_tokens") or 0,
    )


def frame_to_chunks(frame: dict[str, Any]) -> list:
    """Text, reasoning and usage chunks carried by one frame, in that order."""
    chunks: list = []
    delta = extract_delta(frame)
    content = delta.get("content")
    if isinstance(content, str) and content:
        chunks.append(TextChunk(text=content))
    reasoning = extract_reasoning(delta)
    if reasoning:
        chunks.append(ReasoningChunk(text=reasoning))
    usage = extract_usage(frame)
    if usage is not None:
        chunks.append(usage)
    return chunks
