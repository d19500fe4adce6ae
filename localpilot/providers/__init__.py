"""
Handlers for local inference backends.

Provider-agnostic architecture: Protocol defines WHAT, implementations define HOW.
"""

from .base import AbortController, ApiHandler, HandlerModel, ModelInfo, RequestAborted
from .lmstudio import LmStudioError, LmStudioHandler, is_gpt_oss_model, lmstudio_model_info
from .ollama import OLLAMA_MODEL_INFO, OllamaError, OllamaHandler

__all__ = [
    "AbortController",
    "ApiHandler",
    "HandlerModel",
    "ModelInfo",
    "RequestAborted",
    "LmStudioError",
    "LmStudioHandler",
    "is_gpt_oss_model",
    "lmstudio_model_info",
    "OLLAMA_MODEL_INFO",
    "OllamaError",
    "OllamaHandler",
]
