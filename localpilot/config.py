"""
Configuration constants and Pydantic models for localpilot.
"""

import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


Mode = Literal["plan", "act"]
ApiProvider = Literal["ollama", "lmstudio"]
ReasoningEffort = Literal["low", "medium", "high"]


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS
# ─────────────────────────────────────────────────────────────────────

DEFAULT_LMSTUDIO_BASE_URL: str = "http://localhost:1234"
DEFAULT_OLLAMA_BASE_URL: str = "http://localhost:11434"
DEFAULT_OLLAMA_NUM_CTX: int = 32768
DEFAULT_REQUEST_TIMEOUT_MS: int = 30000
DEFAULT_REASONING_EFFORT: ReasoningEffort = "medium"
DEFAULT_MODE: Mode = "act"


# ─────────────────────────────────────────────────────────────────────
# INTERNAL CONSTANTS
# ─────────────────────────────────────────────────────────────────────

PERSISTENCE_DELAY_SECONDS: float = 0.5
SSE_DATA_PREFIX: str = "data:"
SSE_DONE_MARKER: str = "[DONE]"


# ─────────────────────────────────────────────────────────────────────
# RETRY CONFIGURATION - For local server connection failures
# ─────────────────────────────────────────────────────────────────────

def get_retry_attempts() -> int:
    """
    Get max attempts per request from environment or default.

    Set LOCALPILOT_RETRY_ATTEMPTS in .env (default: 3).
    """
    try:
        return int(os.environ.get("LOCALPILOT_RETRY_ATTEMPTS", "3"))
    except ValueError:
        return 3


def get_retry_base_delay() -> float:
    """
    Get the first backoff delay in seconds.

    Set LOCALPILOT_RETRY_BASE_DELAY in .env (default: 1.0).
    """
    try:
        return float(os.environ.get("LOCALPILOT_RETRY_BASE_DELAY", "1.0"))
    except ValueError:
        return 1.0


def get_retry_max_delay() -> float:
    """
    Get the backoff ceiling in seconds.

    Set LOCALPILOT_RETRY_MAX_DELAY in .env (default: 10.0).
    """
    try:
        return float(os.environ.get("LOCALPILOT_RETRY_MAX_DELAY", "10.0"))
    except ValueError:
        return 10.0


# ─────────────────────────────────────────────────────────────────────
# STATE LOCATION
# ─────────────────────────────────────────────────────────────────────

def get_state_dir() -> Path:
    """
    Directory holding persisted state files.

    Returns LOCALPILOT_STATE_DIR if set, otherwise ~/.localpilot.
    """
    value = os.environ.get("LOCALPILOT_STATE_DIR", "").strip()
    if value:
        return Path(value).expanduser()
    return Path.home() / ".localpilot"


# ─────────────────────────────────────────────────────────────────────
# SAMPLING PROFILES
# ─────────────────────────────────────────────────────────────────────

class SamplingProfile(BaseModel):
    """Sampling parameters sent to LM Studio."""
    temperature: float
    top_p: float
    top_k: int
    repeat_penalty: float


# Exploratory generation, used for planning
IDEA_PROFILE = SamplingProfile(temperature=0.9, top_p=0.95, top_k=40, repeat_penalty=1.05)

# Deterministic generation, used everywhere else
STRICT_PROFILE = SamplingProfile(temperature=0.1, top_p=1.0, top_k=0, repeat_penalty=1.0)


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class ApiConfiguration(BaseModel):
    """
    Provider configuration as persisted by the host.

    Every field is optional; missing values resolve to the defaults above
    when a handler is built.
    """
    request_timeout_ms: Optional[int] = None
    openai_reasoning_effort: Optional[ReasoningEffort] = None

    ollama_base_url: Optional[str] = None
    ollama_api_key: Optional[str] = None
    ollama_api_options_ctx_num: Optional[str] = None  # stored as text by the settings UI
    lmstudio_base_url: Optional[str] = None

    # Plan mode
    plan_mode_api_provider: Optional[str] = None
    plan_mode_ollama_model_id: Optional[str] = None
    plan_mode_lmstudio_model_id: Optional[str] = None
    plan_mode_thinking_budget_tokens: Optional[int] = None
    plan_mode_lmstudio_temperature: Optional[float] = None
    plan_mode_lmstudio_top_p: Optional[float] = None
    plan_mode_lmstudio_top_k: Optional[int] = None
    plan_mode_lmstudio_repeat_penalty: Optional[float] = None
    plan_idea_mode_enabled: Optional[bool] = None

    # Act mode
    act_mode_api_provider: Optional[str] = None
    act_mode_ollama_model_id: Optional[str] = None
    act_mode_lmstudio_model_id: Optional[str] = None
    act_mode_thinking_budget_tokens: Optional[int] = None
    act_mode_lmstudio_temperature: Optional[float] = None
    act_mode_lmstudio_top_p: Optional[float] = None
    act_mode_lmstudio_top_k: Optional[int] = None
    act_mode_lmstudio_repeat_penalty: Optional[float] = None

    favorited_model_ids: Optional[list[str]] = None

    def for_mode(self, mode: Mode, field: str):
        """Read the plan_mode_/act_mode_ variant of a field."""
        return getattr(self, f"{mode}_mode_{field}")

    @classmethod
    def from_stored(cls, values: dict[str, Any]) -> "ApiConfiguration":
        """
        Build from persisted values, dropping any that fail validation.

        A dropped field falls back to its default (None) so one bad stored
        value never makes the whole configuration unreadable.
        """
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            invalid = {error["loc"][0] for error in e.errors() if error["loc"]}
            for key in sorted(invalid, key=str):
                logger.warning(f"Ignoring invalid stored setting {key}={values.get(key)!r}")
            return cls.model_validate({k: v for k, v in values.items() if k not in invalid})


class LmStudioOptions(BaseModel):
    """Connection and model settings for one LmStudioHandler."""
    base_url: Optional[str] = None
    model_id: Optional[str] = None
    thinking_budget_tokens: Optional[int] = None
    reasoning_effort: Optional[ReasoningEffort] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repeat_penalty: Optional[float] = None
    request_timeout_ms: Optional[int] = None

    @property
    def resolved_base_url(self) -> str:
        return (self.base_url or DEFAULT_LMSTUDIO_BASE_URL).rstrip("/")


class OllamaOptions(BaseModel):
    """Connection and model settings for one OllamaHandler."""
    base_url: Optional[str] = None
    model_id: Optional[str] = None
    api_key: Optional[str] = None
    num_ctx: Optional[int] = None
    request_timeout_ms: Optional[int] = None
    thinking_budget_tokens: Optional[int] = None

    @property
    def resolved_base_url(self) -> str:
        return (self.base_url or DEFAULT_OLLAMA_BASE_URL).rstrip("/")

    @property
    def timeout_seconds(self) -> float:
        return (self.request_timeout_ms or DEFAULT_REQUEST_TIMEOUT_MS) / 1000
