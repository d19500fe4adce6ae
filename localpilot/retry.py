"""
Retry wrapper for completion streams.

A stream is only retried while nothing has reached the caller: opening the
connection and pulling the first chunk happen inside the tenacity loop,
everything after that is delivered as-is. Replaying a stream that already
produced output would duplicate text on the caller's side.
"""

import logging
import time
from email.utils import parsedate_to_datetime
from typing import AsyncGenerator, Callable, Optional, TypeVar

from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from localpilot.config import get_retry_attempts, get_retry_base_delay, get_retry_max_delay

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (attempt_number, max_retries, delay_ms, error)
RetryObserver = Callable[[int, int, int, BaseException], None]


class RetryOptions(BaseModel):
    """Retry policy for one handler. max_retries is the total attempt ceiling."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retry_all_errors: bool = False

    @classmethod
    def from_env(cls, retry_all_errors: bool = False) -> "RetryOptions":
        return cls(
            max_retries=get_retry_attempts(),
            base_delay=get_retry_base_delay(),
            max_delay=get_retry_max_delay(),
            retry_all_errors=retry_all_errors,
        )


def error_status_code(error: BaseException) -> Optional[int]:
    """HTTP status carried by an httpx, openai or ollama error, if any."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_rate_limit_error(error: BaseException) -> bool:
    return error_status_code(error) == 429


def retry_after_seconds(error: BaseException) -> Optional[float]:
    """
    Delay requested by a Retry-After header on the error's response.

    Accepts both delta-seconds and HTTP-date forms.
    """
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        return max(0.0, parsedate_to_datetime(value).timestamp() - time.time())
    except (TypeError, ValueError):
        return None


class wait_retry_after_or_exponential(wait_base):
    """Exponential backoff capped at max_delay, unless the server asked for a delay."""

    def __init__(self, base_delay: float, max_delay: float):
        self.base_delay = base_delay
        self.max_delay = max_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        if retry_state.outcome is not None and retry_state.outcome.failed:
            requested = retry_after_seconds(retry_state.outcome.exception())
            if requested is not None:
                return requested
        exponent = retry_state.attempt_number - 1
        return min(self.max_delay, self.base_delay * (2 ** exponent))


async def with_retry(
    stream_factory: Callable[[], AsyncGenerator[T, None]],
    options: Optional[RetryOptions] = None,
    on_retry_attempt: Optional[RetryObserver] = None,
) -> AsyncGenerator[T, None]:
    """
    Wrap a stream-producing callable with pre-first-chunk retry.

    Args:
        stream_factory: Called once per attempt; must open a fresh stream
        options: Retry policy (defaults to RetryOptions())
        on_retry_attempt: Advisory observer called before each backoff sleep

    Yields:
        Items of the first stream that produced one, in order

    Raises:
        The last error once attempts are exhausted, or any error raised
        after the first item was delivered
    """
    options = options or RetryOptions()

    def should_retry(error: BaseException) -> bool:
        if not isinstance(error, Exception):
            return False
        return options.retry_all_errors or is_rate_limit_error(error)

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        delay_ms = int(delay * 1000)
        logger.warning(
            f"Stream attempt {retry_state.attempt_number}/{options.max_retries} failed, "
            f"retrying in {delay_ms}ms: {error}"
        )
        if on_retry_attempt is not None:
            on_retry_attempt(retry_state.attempt_number, options.max_retries, delay_ms, error)

    async def open_stream():
        stream = stream_factory()
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            return stream, False, None
        except BaseException:
            await stream.aclose()
            raise
        return stream, True, first

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, options.max_retries)),
        wait=wait_retry_after_or_exponential(options.base_delay, options.max_delay),
        retry=retry_if_exception(should_retry),
        before_sleep=before_sleep,
        reraise=True,
    )
    stream, has_first, first = await retrying(open_stream)

    first_chunk_delivered = False
    try:
        if not has_first:
            return
        yield first
        first_chunk_delivered = True
        async for item in stream:
            yield item
    except Exception as e:
        if first_chunk_delivered:
            logger.warning(f"Stream failed after output was delivered, not retrying: {e}")
        raise
    finally:
        await stream.aclose()
