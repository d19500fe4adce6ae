"""Tests for localpilot.config module."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from localpilot.config import (
    ApiConfiguration,
    LmStudioOptions,
    OllamaOptions,
    get_retry_attempts,
    get_retry_base_delay,
    get_retry_max_delay,
    get_state_dir,
)
from localpilot.retry import RetryOptions


class TestRetryEnvironment:
    """Tests for the retry getters."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_retry_attempts() == 3
            assert get_retry_base_delay() == 1.0
            assert get_retry_max_delay() == 10.0

    def test_values_from_environment(self):
        env = {
            "LOCALPILOT_RETRY_ATTEMPTS": "5",
            "LOCALPILOT_RETRY_BASE_DELAY": "0.25",
            "LOCALPILOT_RETRY_MAX_DELAY": "4",
        }
        with patch.dict(os.environ, env, clear=True):
            options = RetryOptions.from_env()

        assert options.max_retries == 5
        assert options.base_delay == 0.25
        assert options.max_delay == 4.0
        assert options.retry_all_errors is False

    def test_invalid_values_fall_back(self):
        env = {"LOCALPILOT_RETRY_ATTEMPTS": "many", "LOCALPILOT_RETRY_MAX_DELAY": "soon"}
        with patch.dict(os.environ, env, clear=True):
            assert get_retry_attempts() == 3
            assert get_retry_max_delay() == 10.0


class TestStateDir:
    """Tests for get_state_dir()."""

    def test_default_under_home(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_state_dir() == Path.home() / ".localpilot"

    def test_override(self, tmp_path):
        with patch.dict(os.environ, {"LOCALPILOT_STATE_DIR": str(tmp_path)}):
            assert get_state_dir() == tmp_path


class TestApiConfiguration:
    """Tests for the ApiConfiguration model."""

    def test_all_fields_optional(self):
        configuration = ApiConfiguration()
        assert configuration.act_mode_api_provider is None
        assert configuration.model_fields_set == set()

    @pytest.mark.parametrize("mode,expected", [("plan", "planner"), ("act", "coder")])
    def test_for_mode(self, mode, expected):
        configuration = ApiConfiguration(
            plan_mode_lmstudio_model_id="planner",
            act_mode_lmstudio_model_id="coder",
        )
        assert configuration.for_mode(mode, "lmstudio_model_id") == expected

    def test_invalid_reasoning_effort_rejected(self):
        with pytest.raises(ValueError):
            ApiConfiguration(openai_reasoning_effort="extreme")

    def test_from_stored_drops_only_invalid_fields(self):
        configuration = ApiConfiguration.from_stored({
            "openai_reasoning_effort": "extreme",
            "plan_mode_thinking_budget_tokens": "512",
            "lmstudio_base_url": "http://box:1234",
        })

        assert configuration.openai_reasoning_effort is None
        assert configuration.plan_mode_thinking_budget_tokens == 512
        assert configuration.lmstudio_base_url == "http://box:1234"


class TestHandlerOptions:
    """Tests for LmStudioOptions / OllamaOptions."""

    def test_base_url_defaults(self):
        assert LmStudioOptions().resolved_base_url == "http://localhost:1234"
        assert OllamaOptions().resolved_base_url == "http://localhost:11434"

    def test_trailing_slash_stripped(self):
        assert LmStudioOptions(base_url="http://box:1234/").resolved_base_url == "http://box:1234"

    def test_ollama_timeout_seconds(self):
        assert OllamaOptions().timeout_seconds == 30.0
        assert OllamaOptions(request_timeout_ms=5000).timeout_seconds == 5.0
