"""
ApiHandler Protocol - defines the contract for local inference backends.

This is the WHAT (interface), not the HOW (implementation).
See lmstudio.py and ollama.py for concrete implementations.
"""

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

from pydantic import BaseModel

from localpilot.messages import ChatMessage
from localpilot.stream import ApiStream, UsageChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ModelInfo(BaseModel):
    """Static capabilities of a model. max_tokens <= 0 means unknown."""
    max_tokens: int = -1
    context_window: int = 128_000
    supports_images: bool = False
    supports_prompt_cache: bool = False
    input_price: float = 0.0
    output_price: float = 0.0
    description: Optional[str] = None


class HandlerModel(BaseModel):
    id: str
    info: ModelInfo


class ApiHandler(Protocol):
    """
    Contract for streaming completion backends.

    Implementations must provide:
    - Streaming completion (create_message)
    - Model identity and capabilities (get_model)
    - Last usage seen on the wire (get_last_usage)

    supports_cancellation is fixed per handler class; callers check it once
    instead of probing for cancel_active_request at call time.
    """

    supports_cancellation: bool

    def create_message(self, system_prompt: str, messages: list[ChatMessage]) -> ApiStream:
        """
        Open a new completion stream.

        Args:
            system_prompt: Sent as the leading system message
            messages: Conversation history, oldest first

        Returns:
            Lazy, non-restartable stream of StreamChunk. Each call opens a
            new network request when iteration starts.

        Raises:
            Provider error once retries are exhausted or after output was
            delivered. Cancellation ends the stream without error.
        """
        ...

    def get_model(self) -> HandlerModel:
        ...

    def get_last_usage(self) -> Optional[UsageChunk]:
        ...

    def cancel_active_request(self) -> None:
        ...


class RequestAborted(Exception):
    """Raised from a guarded await when its request was cancelled."""


_END = object()


async def _next_or_end(iterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class AbortController:
    """
    Cooperative cancellation handle for one request.

    Network awaits run through guard() (or iterate()) as tasks that abort()
    cancels, so a request blocked on connecting, waiting for headers or
    reading the next frame is unblocked at once. Registered closers shut
    the transport down as well.
    """

    def __init__(self):
        self._aborted = False
        self._closers: list[Callable[[], Awaitable[None]]] = []
        self._guarded: set[asyncio.Future] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def on_abort(self, closer: Callable[[], Awaitable[None]]) -> None:
        """Register a transport closer. Runs right away if already aborted."""
        if self._aborted:
            self._schedule_close(closer)
        else:
            self._closers.append(closer)

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        for future in list(self._guarded):
            future.cancel()
        for closer in self._closers:
            self._schedule_close(closer)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` as a task that abort() cancels.

        Raises:
            RequestAborted: if the request is aborted before or while waiting
        """
        future = asyncio.ensure_future(awaitable)
        if self._aborted:
            future.cancel()
        self._guarded.add(future)
        try:
            return await future
        except asyncio.CancelledError:
            if self._aborted and future.cancelled():
                raise RequestAborted() from None
            raise
        finally:
            self._guarded.discard(future)

    async def iterate(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Iterate `source` with every read guarded."""
        iterator = source.__aiter__()
        while True:
            item = await self.guard(_next_or_end(iterator))
            if item is _END:
                return
            yield item

    def _schedule_close(self, closer: Callable[[], Awaitable[None]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._close(closer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _close(closer: Callable[[], Awaitable[None]]) -> None:
        try:
            await closer()
        except Exception as e:
            logger.debug(f"Error while closing aborted transport: {e}")
