"""
OllamaHandler - streaming completions from an Ollama-compatible server.

Uses ollama.AsyncClient against the native /api/chat endpoint. Ollama
streams newline-delimited JSON with no non-standard fields to preserve,
so there is no raw decoding path here.
"""

import logging
from typing import Optional

import httpx
from ollama import AsyncClient, ResponseError

from localpilot.config import DEFAULT_OLLAMA_NUM_CTX, OllamaOptions
from localpilot.messages import ChatMessage
from localpilot.providers.base import AbortController, HandlerModel, ModelInfo
from localpilot.retry import RetryObserver, RetryOptions, with_retry
from localpilot.stream import ApiStream, ReasoningChunk, TextChunk, UsageChunk
from localpilot.transform import convert_to_ollama_messages

logger = logging.getLogger(__name__)

OLLAMA_MODEL_INFO = ModelInfo(
    max_tokens=-1,
    context_window=128_000,
    supports_images=True,
    supports_prompt_cache=False,
)


class OllamaError(Exception):
    """Ollama request failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OllamaHandler:
    """Ollama implementation of ApiHandler."""

    supports_cancellation = True

    def __init__(
        self,
        options: OllamaOptions,
        retry_options: Optional[RetryOptions] = None,
        on_retry_attempt: Optional[RetryObserver] = None,
    ):
        self.options = options
        self._retry_options = retry_options or RetryOptions.from_env(retry_all_errors=True)
        self._on_retry_attempt = on_retry_attempt
        self._client: Optional[AsyncClient] = None
        self._last_usage: Optional[UsageChunk] = None
        self._abort_controller: Optional[AbortController] = None

    def _ensure_client(self) -> AsyncClient:
        if self._client is None:
            headers = None
            if self.options.api_key:
                headers = {"Authorization": f"Bearer {self.options.api_key}"}
            try:
                self._client = AsyncClient(
                    host=self.options.resolved_base_url,
                    timeout=self.options.timeout_seconds,
                    headers=headers,
                )
            except Exception as e:
                raise OllamaError(f"Error creating Ollama client: {e}") from e
        return self._client

    def get_model(self) -> HandlerModel:
        return HandlerModel(id=self.options.model_id or "", info=OLLAMA_MODEL_INFO)

    def get_last_usage(self) -> Optional[UsageChunk]:
        return self._last_usage

    def cancel_active_request(self) -> None:
        controller, self._abort_controller = self._abort_controller, None
        if controller is not None:
            logger.debug(f"Cancelling Ollama request for '{self.options.model_id}'")
            controller.abort()

    def create_message(self, system_prompt: str, messages: list[ChatMessage]) -> ApiStream:
        controller = AbortController()
        self._abort_controller = controller
        wire = [{"role": "system", "content": system_prompt}, *convert_to_ollama_messages(messages)]

        stream = with_retry(
            lambda: self._stream_chat(wire, controller),
            self._retry_options,
            self._on_retry_attempt,
        )
        return self._release_on_exit(stream, controller)

    async def _release_on_exit(self, stream, controller: AbortController) -> ApiStream:
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()
            if self._abort_controller is controller:
                self._abort_controller = None

    async def _stream_chat(self, wire: list[dict], controller: AbortController) -> ApiStream:
        if controller.aborted:
            return
        client = self._ensure_client()
        kwargs = {
            "model": self.get_model().id,
            "messages": wire,
            "stream": True,
            "options": {"num_ctx": self.options.num_ctx or DEFAULT_OLLAMA_NUM_CTX},
        }
        if (self.options.thinking_budget_tokens or 0) > 0:
            kwargs["think"] = True

        response = None
        try:
            response = await controller.guard(client.chat(**kwargs))
            async for part in controller.iterate(response):
                if controller.aborted:
                    return
                message = part.message
                thinking = getattr(message, "thinking", None) if message else None
                if thinking:
                    yield ReasoningChunk(text=thinking)
                if message and isinstance(message.content, str) and message.content:
                    yield TextChunk(text=message.content)
                if part.eval_count is not None or part.prompt_eval_count is not None:
                    usage = UsageChunk(
                        input_tokens=part.prompt_eval_count or 0,
                        output_tokens=part.eval_count or 0,
                    )
                    self._last_usage = usage
                    yield usage
        except httpx.TimeoutException as e:
            if controller.aborted:
                return
            raise OllamaError(
                f"Ollama request timed out after {self.options.timeout_seconds:g} seconds"
            ) from e
        except ResponseError as e:
            if controller.aborted:
                return
            logger.error(f"Ollama API error ({e.status_code}): {e.error}")
            raise OllamaError(f"Ollama API error ({e.status_code}): {e.error}", status_code=e.status_code) from e
        except Exception as e:
            if controller.aborted:
                return
            logger.error(f"Ollama request failed: {e}")
            raise OllamaError(f"Ollama request failed: {e}") from e
        finally:
            if response is not None:
                await response.aclose()
