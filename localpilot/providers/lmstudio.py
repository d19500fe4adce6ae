"""
LmStudioHandler - streaming completions from an LM Studio server.

Two request paths share one frame decoder:
- Standard models go through the openai SDK (AsyncOpenAI bound to {base}/v1).
- gpt-oss models need a top-level `reasoning_effort` field that the SDK
  would not forward as-is, so the request is POSTed with httpx and the SSE
  body is decoded by hand (see sse.py).

LM Studio returns no structured error body, so every non-abort failure is
reported as an LmStudioError pointing at the LM Studio developer logs.
"""

import logging
from typing import Any, AsyncGenerator, Optional

import httpx
from openai import AsyncOpenAI

from localpilot.config import DEFAULT_REASONING_EFFORT, LmStudioOptions
from localpilot.messages import ChatMessage
from localpilot.providers.base import AbortController, HandlerModel, ModelInfo
from localpilot.providers.sse import SSEFrameDecoder, frame_to_chunks
from localpilot.retry import RetryObserver, RetryOptions, error_status_code, with_retry
from localpilot.stream import ApiStream, UsageChunk
from localpilot.transform import convert_to_openai_messages

logger = logging.getLogger(__name__)

LMSTUDIO_LOGS_HINT = (
    "Please check the LM Studio developer logs to debug what went wrong. "
    "You may need to load the model with a larger context length."
)


class LmStudioError(Exception):
    """Human-readable error from an LM Studio request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def is_gpt_oss_model(model_id: str) -> bool:
    """True for gpt-oss family ids, e.g. "gpt-oss-20b" or "openai/gpt-oss-120b"."""
    lower = (model_id or "").lower()
    return lower.startswith("gpt-oss") or "/gpt-oss" in lower


def lmstudio_model_info(model_id: Optional[str]) -> ModelInfo:
    """
    Capabilities for an LM Studio model id.

    LM Studio does not report per-model limits on the chat endpoint, so
    these are sane defaults with overrides for known families.
    """
    info = ModelInfo(max_tokens=-1, context_window=128_000, supports_images=False)
    if model_id and is_gpt_oss_model(model_id):
        info = info.model_copy(update={"context_window": 131_072})
    return info


class LmStudioHandler:
    """
    LM Studio implementation of ApiHandler.

    One handler may serve many sequential requests. Each request owns its
    own AbortController and decoder; the handler only remembers the most
    recent controller (for cancel_active_request) and the last usage seen.
    """

    supports_cancellation = True

    def __init__(
        self,
        options: LmStudioOptions,
        retry_options: Optional[RetryOptions] = None,
        on_retry_attempt: Optional[RetryObserver] = None,
    ):
        self.options = options
        # Local servers have no error taxonomy worth discriminating
        self._retry_options = retry_options or RetryOptions.from_env(retry_all_errors=True)
        self._on_retry_attempt = on_retry_attempt
        self._client: Optional[AsyncOpenAI] = None
        self._last_usage: Optional[UsageChunk] = None
        self._abort_controller: Optional[AbortController] = None

    @property
    def _timeout(self) -> Optional[float]:
        if self.options.request_timeout_ms:
            return self.options.request_timeout_ms / 1000
        return None

    @property
    def _thinking_enabled(self) -> bool:
        return (self.options.thinking_budget_tokens or 0) > 0

    def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            try:
                self._client = AsyncOpenAI(
                    base_url=f"{self.options.resolved_base_url}/v1",
                    api_key="noop",
                    max_retries=0,
                    timeout=self._timeout,
                )
            except Exception as e:
                raise LmStudioError(f"Error creating LM Studio client: {e}") from e
        return self._client

    def get_model(self) -> HandlerModel:
        model_id = self.options.model_id or ""
        return HandlerModel(id=model_id, info=lmstudio_model_info(model_id))

    def get_last_usage(self) -> Optional[UsageChunk]:
        return self._last_usage

    def cancel_active_request(self) -> None:
        controller, self._abort_controller = self._abort_controller, None
        if controller is not None:
            logger.debug(f"Cancelling LM Studio request for '{self.options.model_id}'")
            controller.abort()

    def create_message(self, system_prompt: str, messages: list[ChatMessage]) -> ApiStream:
        controller = AbortController()
        self._abort_controller = controller

        wire = [{"role": "system", "content": system_prompt}, *convert_to_openai_messages(messages)]
        if is_gpt_oss_model(self.get_model().id):
            def factory():
                return self._stream_raw_sse(wire, controller)
        else:
            def factory():
                return self._stream_sdk(wire, controller)

        stream = with_retry(factory, self._retry_options, self._on_retry_attempt)
        return self._release_on_exit(stream, controller)

    async def _release_on_exit(self, stream: AsyncGenerator, controller: AbortController) -> ApiStream:
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()
            if self._abort_controller is controller:
                self._abort_controller = None

    def _sampling_fields(self) -> dict[str, Any]:
        fields = {
            "temperature": self.options.temperature,
            "top_p": self.options.top_p,
            "top_k": self.options.top_k,
            "repeat_penalty": self.options.repeat_penalty,
        }
        return {k: v for k, v in fields.items() if v is not None}

    def _record(self, chunk):
        if isinstance(chunk, UsageChunk):
            self._last_usage = chunk
        return chunk

    # ─────────────────────────────────────────────────────────────────
    # STANDARD PATH (openai SDK)
    # ─────────────────────────────────────────────────────────────────

    async def _stream_sdk(self, wire: list[dict], controller: AbortController) -> ApiStream:
        if controller.aborted:
            return
        client = self._ensure_client()
        sampling = self._sampling_fields()

        extra_body: dict[str, Any] = {
            "reasoning": (
                {"budget_tokens": self.options.thinking_budget_tokens}
                if self._thinking_enabled else False
            ),
        }
        for key in ("top_k", "repeat_penalty"):
            if key in sampling:
                extra_body[key] = sampling.pop(key)

        try:
            stream = await controller.guard(client.chat.completions.create(
                model=self.get_model().id,
                messages=wire,
                stream=True,
                stream_options={"include_usage": True},
                extra_body=extra_body,
                **sampling,
            ))
            controller.on_abort(stream.close)
            async with stream:
                async for chunk in controller.iterate(stream):
                    for item in frame_to_chunks(chunk.to_dict()):
                        if controller.aborted:
                            return
                        yield self._record(item)
        except Exception as e:
            if controller.aborted:
                logger.debug(f"LM Studio stream ended by cancellation: {e}")
                return
            raise LmStudioError(LMSTUDIO_LOGS_HINT, status_code=error_status_code(e)) from e

    # ─────────────────────────────────────────────────────────────────
    # RAW SSE PATH (gpt-oss)
    # ─────────────────────────────────────────────────────────────────

    async def _stream_raw_sse(self, wire: list[dict], controller: AbortController) -> ApiStream:
        if controller.aborted:
            return
        if self._thinking_enabled:
            effort = self.options.reasoning_effort or DEFAULT_REASONING_EFFORT
        else:
            effort = "low"

        payload = {
            "model": self.get_model().id,
            "messages": wire,
            "stream": True,
            "stream_options": {"include_usage": True},
            "reasoning_effort": effort,
            **self._sampling_fields(),
        }
        decoder = SSEFrameDecoder()

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                request = client.build_request(
                    "POST",
                    f"{self.options.resolved_base_url}/v1/chat/completions",
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
                response = await controller.guard(client.send(request, stream=True))
                controller.on_abort(response.aclose)
                async with response:
                    if not response.is_success:
                        raise LmStudioError(
                            f"LM Studio request failed with status {response.status_code}",
                            status_code=response.status_code,
                        )

                    async for data in controller.iterate(response.aiter_bytes()):
                        for frame in decoder.feed(data):
                            for item in frame_to_chunks(frame):
                                if controller.aborted:
                                    return
                                yield self._record(item)
                        if decoder.done or controller.aborted:
                            break

                    for frame in decoder.flush():
                        for item in frame_to_chunks(frame):
                            if controller.aborted:
                                return
                            yield self._record(item)
        except Exception as e:
            if controller.aborted:
                logger.debug(f"LM Studio (GPT-OSS) stream ended by cancellation: {e}")
                return
            raise LmStudioError(
                f"LM Studio (GPT-OSS) request failed: {e}. {LMSTUDIO_LOGS_HINT}",
                status_code=error_status_code(e),
            ) from e
