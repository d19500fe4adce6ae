"""
localpilot - streaming chat completions from local LM Studio and Ollama servers.
"""

__version__ = "0.1.0"

from localpilot.config import ApiConfiguration, Mode, SamplingProfile
from localpilot.factory import build_api_handler, create_handler_for_provider, resolve_sampling_params
from localpilot.messages import (
    ChatMessage,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from localpilot.providers import ApiHandler, LmStudioError, LmStudioHandler, OllamaError, OllamaHandler
from localpilot.retry import RetryOptions, with_retry
from localpilot.storage import CacheNotInitializedError, CacheService, StateStorage
from localpilot.stream import ReasoningChunk, StreamChunk, TextChunk, UsageChunk

__all__ = [
    "ApiConfiguration",
    "Mode",
    "SamplingProfile",
    "build_api_handler",
    "create_handler_for_provider",
    "resolve_sampling_params",
    "ChatMessage",
    "ImageBlock",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "ApiHandler",
    "LmStudioError",
    "LmStudioHandler",
    "OllamaError",
    "OllamaHandler",
    "RetryOptions",
    "with_retry",
    "CacheNotInitializedError",
    "CacheService",
    "StateStorage",
    "ReasoningChunk",
    "StreamChunk",
    "TextChunk",
    "UsageChunk",
]
