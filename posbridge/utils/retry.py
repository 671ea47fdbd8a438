"""
Retry utility functions with exponential backoff.
Categorizes errors as transient (retryable) or permanent (non-retryable) and
builds tenacity retry controllers that honour a provider Retry-After hint.
"""

import asyncio
from collections.abc import Awaitable, Callable

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_before_delay,
)

logger = structlog.get_logger()


class TransientError(Exception):
    """Raised for transient/retryable errors (network issues, rate limits, 5xx)."""

    pass


class PermanentError(Exception):
    """Raised for permanent/non-retryable errors (4xx validation errors, auth failures)."""

    pass


def is_transient_error(exception: BaseException) -> bool:
    """
    True for failures worth another attempt: explicit TransientError, network
    and timeout errors, HTTP 5xx and 429. Everything else is permanent.
    """
    if isinstance(exception, PermanentError):
        return False
    if isinstance(exception, TransientError):
        return True

    if isinstance(exception, httpx.ConnectError | httpx.TimeoutException | httpx.NetworkError):
        return True

    if isinstance(exception, httpx.HTTPStatusError):
        status_code = exception.response.status_code
        return 500 <= status_code < 600 or status_code == 429

    return isinstance(exception, TimeoutError)


def backoff_delay(attempt: int, initial_delay: float, multiplier: float = 2.0) -> float:
    """Delay before retrying after the given 1-based attempt: initial * multiplier^(attempt-1)."""
    return initial_delay * (multiplier ** max(attempt - 1, 0))


def wait_retry_after_or_exponential(initial_delay: float, multiplier: float = 2.0):
    """
    Build a tenacity wait callable.
    Uses the failed attempt's `retry_after` (seconds) when the exception carries one,
    otherwise exponential backoff from initial_delay.
    """

    def _wait(retry_state: RetryCallState) -> float:
        if retry_state.outcome is not None:
            exception = retry_state.outcome.exception()
            retry_after = getattr(exception, "retry_after", None)
            if retry_after is not None and retry_after >= 0:
                return float(retry_after)
        return backoff_delay(retry_state.attempt_number, initial_delay, multiplier)

    return _wait


def async_retrying(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    deadline: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncRetrying:
    """
    Create an AsyncRetrying controller that only retries transient errors.

    Args:
        max_attempts: Total attempts including the first one
        initial_delay: Delay after the first failed attempt (seconds)
        multiplier: Multiplier for exponential backoff
        deadline: Optional overall time limit (seconds). A retry whose wait would
            end past it is not attempted; the last error is raised instead.
        sleep: Awaitable sleep used between attempts

    Returns:
        AsyncRetrying usable as `async for attempt in controller`
    """
    stop = stop_after_attempt(max_attempts)
    if deadline is not None:
        stop = stop | stop_before_delay(deadline)

    return AsyncRetrying(
        stop=stop,
        wait=wait_retry_after_or_exponential(initial_delay, multiplier),
        retry=retry_if_exception(is_transient_error),
        reraise=True,
        sleep=sleep,
        before_sleep=_log_retry_attempt,
    )


def _log_retry_attempt(retry_state: RetryCallState):
    """Log retry attempt before sleeping."""
    if retry_state.outcome is not None:
        exception = retry_state.outcome.exception()
        logger.warning(
            "Retrying after transient error",
            attempt=retry_state.attempt_number,
            exception=str(exception),
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )
