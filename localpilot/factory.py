"""
Handler factory - builds the ApiHandler for a provider tag and mode.

Provider selection happens once, here. Handlers never re-dispatch on the
provider name per call.
"""

import logging
from typing import Callable, Optional

from localpilot.config import (
    IDEA_PROFILE,
    STRICT_PROFILE,
    ApiConfiguration,
    LmStudioOptions,
    Mode,
    OllamaOptions,
    SamplingProfile,
)
from localpilot.providers.base import ApiHandler
from localpilot.providers.lmstudio import LmStudioHandler
from localpilot.providers.ollama import OllamaHandler
from localpilot.retry import RetryObserver, RetryOptions

logger = logging.getLogger(__name__)


def resolve_sampling_params(configuration: ApiConfiguration, mode: Mode) -> SamplingProfile:
    """
    Sampling parameters for LM Studio in the given mode.

    Idea is the default for planning (opt-out via plan_idea_mode_enabled=False);
    everything else uses Strict. Each parameter falls back to its profile
    default on its own.
    """
    use_idea = mode == "plan" and configuration.plan_idea_mode_enabled is not False
    profile = IDEA_PROFILE if use_idea else STRICT_PROFILE

    values = {}
    for field in SamplingProfile.model_fields:
        configured = configuration.for_mode(mode, f"lmstudio_{field}")
        values[field] = configured if configured is not None else getattr(profile, field)
    return SamplingProfile(**values)


def _parse_num_ctx(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        logger.warning(f"Ignoring non-numeric Ollama context size: {value!r}")
        return None


def _build_ollama(configuration: ApiConfiguration, mode: Mode, **kwargs) -> OllamaHandler:
    options = OllamaOptions(
        base_url=configuration.ollama_base_url,
        model_id=configuration.for_mode(mode, "ollama_model_id"),
        api_key=configuration.ollama_api_key,
        num_ctx=_parse_num_ctx(configuration.ollama_api_options_ctx_num),
        request_timeout_ms=configuration.request_timeout_ms,
        thinking_budget_tokens=configuration.for_mode(mode, "thinking_budget_tokens"),
    )
    return OllamaHandler(options, **kwargs)


def _build_lmstudio(configuration: ApiConfiguration, mode: Mode, **kwargs) -> LmStudioHandler:
    sampling = resolve_sampling_params(configuration, mode)
    options = LmStudioOptions(
        base_url=configuration.lmstudio_base_url,
        model_id=configuration.for_mode(mode, "lmstudio_model_id"),
        thinking_budget_tokens=configuration.for_mode(mode, "thinking_budget_tokens"),
        reasoning_effort=configuration.openai_reasoning_effort,
        request_timeout_ms=configuration.request_timeout_ms,
        **sampling.model_dump(),
    )
    return LmStudioHandler(options, **kwargs)


# --- Handler Registry ---
# Explicit mapping from the persisted provider tag to its builder.
# The first entry is the fallback for unset or unknown tags.
HANDLER_REGISTRY: dict[str, Callable[..., ApiHandler]] = {
    "ollama": _build_ollama,
    "lmstudio": _build_lmstudio,
}

DEFAULT_PROVIDER = next(iter(HANDLER_REGISTRY))


def create_handler_for_provider(
    provider: Optional[str],
    configuration: ApiConfiguration,
    mode: Mode,
    *,
    retry_options: Optional[RetryOptions] = None,
    on_retry_attempt: Optional[RetryObserver] = None,
) -> ApiHandler:
    """Construct the handler for `provider` with mode-specific fields resolved."""
    builder = HANDLER_REGISTRY.get(provider or "")
    if builder is None:
        if provider:
            logger.warning(
                f"Unknown provider '{provider}'. Supported providers are: "
                f"{list(HANDLER_REGISTRY.keys())}. Falling back to '{DEFAULT_PROVIDER}'."
            )
        provider = DEFAULT_PROVIDER
        builder = HANDLER_REGISTRY[provider]

    handler = builder(
        configuration,
        mode,
        retry_options=retry_options,
        on_retry_attempt=on_retry_attempt,
    )
    model_id = configuration.for_mode(mode, f"{provider}_model_id")
    logger.debug(f"Built {provider} handler for mode '{mode}' with model '{model_id}'")
    return handler


def build_api_handler(
    configuration: ApiConfiguration,
    mode: Mode,
    *,
    retry_options: Optional[RetryOptions] = None,
    on_retry_attempt: Optional[RetryObserver] = None,
) -> ApiHandler:
    """
    Build the handler for the provider configured in `mode`.

    When a thinking budget is set, it is checked against the model's max
    tokens and clamped to max_tokens - 1 if it does not fit. The caller's
    configuration is left untouched. Validation errors are logged and the
    unclamped path is used.
    """
    provider = configuration.for_mode(mode, "api_provider")
    kwargs = {"retry_options": retry_options, "on_retry_attempt": on_retry_attempt}

    try:
        budget = configuration.for_mode(mode, "thinking_budget_tokens")
        if budget and budget > 0:
            handler = create_handler_for_provider(provider, configuration, mode, **kwargs)
            max_tokens = handler.get_model().info.max_tokens
            if max_tokens and max_tokens > 0 and budget > max_tokens:
                clipped = max_tokens - 1
                logger.info(
                    f"Thinking budget {budget} exceeds max tokens {max_tokens} "
                    f"for '{handler.get_model().id}', clamping to {clipped}"
                )
                configuration = configuration.model_copy(
                    update={f"{mode}_mode_thinking_budget_tokens": clipped}
                )
            else:
                return handler
    except Exception as e:
        logger.error(f"Thinking budget validation failed, building handler unclamped: {e}")

    return create_handler_for_provider(provider, configuration, mode, **kwargs)
