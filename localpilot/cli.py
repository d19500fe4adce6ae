"""CLI entry point for localpilot.

Streams chat completions from a local LM Studio or Ollama server using the
persisted configuration, and reads or edits that configuration.

Entry point:
    localpilot chat "<prompt>" [--mode plan|act] [--provider ollama|lmstudio]
    localpilot models [--provider ollama|lmstudio] [--json]
    localpilot config show
    localpilot config set KEY=VALUE [KEY=VALUE ...]
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from localpilot.config import DEFAULT_MODE, ApiConfiguration
from localpilot.discovery import get_lmstudio_models, get_ollama_models
from localpilot.factory import DEFAULT_PROVIDER, HANDLER_REGISTRY, build_api_handler
from localpilot.messages import ChatMessage
from localpilot.providers import LmStudioError, OllamaError
from localpilot.storage import GLOBAL_STATE_KEYS, CacheService, StateStorage
from localpilot.stream import ReasoningChunk, TextChunk

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="localpilot",
        description="Streaming chat against local LM Studio / Ollama servers.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    sub = parser.add_subparsers(dest="command")

    # chat
    chat_p = sub.add_parser("chat", help="Stream a completion for one prompt")
    chat_p.add_argument("prompt", help="User message")
    chat_p.add_argument("--mode", choices=["plan", "act"], default=None, help="Mode (default: stored mode)")
    chat_p.add_argument("--provider", choices=list(HANDLER_REGISTRY), default=None, help="Override the mode's provider")
    chat_p.add_argument("--model", default=None, help="Override the mode's model ID")
    chat_p.add_argument("--system", default=DEFAULT_SYSTEM_PROMPT, help="System prompt")
    chat_p.add_argument(
        "--show-reasoning", action="store_true",
        help="Echo reasoning text to stderr",
    )

    # models
    models_p = sub.add_parser("models", help="List models on the local server")
    models_p.add_argument("--provider", choices=list(HANDLER_REGISTRY), default=None)
    models_p.add_argument(
        "--json", action="store_true", dest="json_output",
        help="Full JSON output (LM Studio returns descriptors)",
    )

    # config
    config_p = sub.add_parser("config", help="Show or edit stored configuration")
    config_sub = config_p.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Print the stored API configuration")
    set_p = config_sub.add_parser("set", help="Store one or more KEY=VALUE pairs")
    set_p.add_argument("pairs", nargs="+", metavar="KEY=VALUE")

    return parser


# ─────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────


async def _open_cache(storage: Optional[StateStorage]) -> CacheService:
    cache = CacheService(storage or StateStorage.open())
    await cache.initialize()
    cache.on_persistence_error = lambda event: print(
        f"Warning: failed to save settings: {event.error}", file=sys.stderr
    )
    return cache


def _on_retry_attempt(attempt: int, max_retries: int, delay_ms: int, error: BaseException) -> None:
    print(
        f"Request failed ({error}). Retrying {attempt}/{max_retries} in {delay_ms / 1000:.1f}s...",
        file=sys.stderr,
    )


def _mode_provider(configuration: ApiConfiguration, mode: str) -> str:
    provider = configuration.for_mode(mode, "api_provider")
    return provider if provider in HANDLER_REGISTRY else DEFAULT_PROVIDER


def _coerce_config_value(key: str, raw: str):
    """Turn a command-line string into the value stored under `key`."""
    if raw.lower() in ("none", "null", ""):
        return None
    if key == "favorited_model_ids":
        if raw.startswith("["):
            return json.loads(raw)
        return [m.strip() for m in raw.split(",") if m.strip()]
    if key in ApiConfiguration.model_fields:
        # pydantic coerces numeric and boolean strings in lax mode
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


async def _cmd_chat(
    prompt: str,
    mode: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    system: str = DEFAULT_SYSTEM_PROMPT,
    show_reasoning: bool = False,
    storage: Optional[StateStorage] = None,
) -> int:
    """Stream one completion to stdout. Returns exit code."""
    cache = await _open_cache(storage)
    try:
        mode = mode or cache.get_global_state_key("mode") or DEFAULT_MODE
        configuration = cache.get_api_configuration()

        overrides = {}
        if provider:
            overrides[f"{mode}_mode_api_provider"] = provider
        if model:
            selected = provider or _mode_provider(configuration, mode)
            overrides[f"{mode}_mode_{selected}_model_id"] = model
        if overrides:
            configuration = configuration.model_copy(update=overrides)

        handler = build_api_handler(configuration, mode, on_retry_attempt=_on_retry_attempt)
        if not handler.get_model().id:
            print(
                f"Error: no model configured for {mode} mode. "
                f"Use --model or `localpilot config set {mode}_mode_<provider>_model_id=...`",
                file=sys.stderr,
            )
            return 1

        return await _stream_to_terminal(handler, system, prompt, show_reasoning)
    finally:
        await cache.flush()


async def _stream_to_terminal(handler, system: str, prompt: str, show_reasoning: bool) -> int:
    loop = asyncio.get_running_loop()
    cancelled = False

    def on_interrupt():
        nonlocal cancelled
        cancelled = True
        handler.cancel_active_request()

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        has_signal_handler = True
    except (NotImplementedError, RuntimeError):
        # Windows event loops do not support signal handlers
        has_signal_handler = False

    try:
        stream = handler.create_message(system, [ChatMessage(role="user", content=prompt)])
        async for chunk in stream:
            if isinstance(chunk, TextChunk):
                sys.stdout.write(chunk.text)
                sys.stdout.flush()
            elif isinstance(chunk, ReasoningChunk) and show_reasoning:
                sys.stderr.write(chunk.text)
                sys.stderr.flush()
        sys.stdout.write("\n")
    except (LmStudioError, OllamaError) as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    finally:
        if has_signal_handler:
            loop.remove_signal_handler(signal.SIGINT)

    if cancelled:
        print("[cancelled]", file=sys.stderr)
        return 130

    usage = handler.get_last_usage()
    if usage is not None:
        print(
            f"[usage] input={usage.input_tokens} output={usage.output_tokens}"
            f" cache_read={usage.cache_read_tokens}",
            file=sys.stderr,
        )
    return 0


async def _cmd_models(
    provider: Optional[str] = None,
    json_output: bool = False,
    storage: Optional[StateStorage] = None,
) -> int:
    """List models on the configured server. Returns exit code."""
    cache = await _open_cache(storage)
    configuration = cache.get_api_configuration()
    mode = cache.get_global_state_key("mode") or DEFAULT_MODE
    provider = provider or _mode_provider(configuration, mode)

    if provider == "lmstudio":
        models = await get_lmstudio_models(configuration.lmstudio_base_url)
        names = [m.get("id") for m in models if m.get("id")]
    else:
        names = await get_ollama_models(configuration.ollama_base_url)
        models = names

    if json_output:
        json.dump({"provider": provider, "models": models}, sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        for name in names:
            print(name)
        if not names:
            print(f"No models found on {provider} server", file=sys.stderr)

    return 0


async def _cmd_config_show(storage: Optional[StateStorage] = None) -> int:
    cache = await _open_cache(storage)
    data = cache.get_api_configuration().model_dump(exclude_none=True)
    if data.get("ollama_api_key"):
        data["ollama_api_key"] = "********"
    data["mode"] = cache.get_global_state_key("mode")
    json.dump(data, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


async def _cmd_config_set(pairs: list[str], storage: Optional[StateStorage] = None) -> int:
    """Store KEY=VALUE pairs through the cache. Returns exit code."""
    api_values = {}
    state_values = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            print(f"Error: expected KEY=VALUE, got '{pair}'", file=sys.stderr)
            return 1
        try:
            value = _coerce_config_value(key, raw.strip())
        except json.JSONDecodeError as e:
            print(f"Error: invalid value for {key}: {e}", file=sys.stderr)
            return 1
        if key in ApiConfiguration.model_fields:
            api_values[key] = value
        elif key in GLOBAL_STATE_KEYS:
            state_values[key] = value
        else:
            print(f"Error: unknown setting '{key}'", file=sys.stderr)
            return 1

    if "mode" in state_values and state_values["mode"] not in ("plan", "act"):
        print("Error: mode must be 'plan' or 'act'", file=sys.stderr)
        return 1

    try:
        configuration = ApiConfiguration.model_validate(api_values)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    cache = await _open_cache(storage)
    cache.set_api_configuration(configuration)
    if state_values:
        cache.set_global_state_batch(state_values)
    if not await cache.flush():
        return 1

    for key in [*api_values, *state_values]:
        print(f"Set {key}", file=sys.stderr)
    return 0


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    # Load env
    from dotenv import load_dotenv
    load_dotenv()

    # Dispatch
    if args.command == "chat":
        code = asyncio.run(_cmd_chat(
            prompt=args.prompt,
            mode=args.mode,
            provider=args.provider,
            model=args.model,
            system=args.system,
            show_reasoning=args.show_reasoning,
        ))
    elif args.command == "models":
        code = asyncio.run(_cmd_models(provider=args.provider, json_output=args.json_output))
    elif args.command == "config" and args.config_command == "show":
        code = asyncio.run(_cmd_config_show())
    elif args.command == "config" and args.config_command == "set":
        code = asyncio.run(_cmd_config_set(args.pairs))
    else:
        parser.print_help()
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
