"""Retry executor for control-plane calls.

Every control-plane call in the engine runs through run_with_retry():
bounded attempts, linear-growth backoff (retry N waits backoff * N
seconds), an exception filter, and an on_retry hook. Built on tenacity's
AsyncRetrying.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from dedicated_hosts import constants
from dedicated_hosts._logging import get_logger
from dedicated_hosts.exceptions import CloudError, ResourceNotFoundError

logger = get_logger(__name__)

T = TypeVar("T")

OnRetry = Callable[[BaseException | None, float, int], None]
"""on_retry(exception, delay_seconds, attempt_number)"""


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int,
    description: str,
    retry_on: tuple[type[BaseException], ...] = (CloudError,),
    never_retry: tuple[type[BaseException], ...] = (ResourceNotFoundError,),
    backoff_seconds: float = constants.RETRY_BACKOFF_SECONDS,
    on_retry: OnRetry | None = None,
) -> T:
    """Run an async operation, retrying matching exceptions.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        retries: Retries after the first attempt (total attempts = retries + 1)
        description: Operation name for log messages
        retry_on: Exception types that trigger a retry
        never_retry: Subtypes of retry_on that propagate immediately
        backoff_seconds: Retry N waits backoff_seconds * N
        on_retry: Optional hook called before each backoff sleep

    Returns:
        The operation's result

    Raises:
        The last exception once retries are exhausted, or any exception
        not selected by retry_on/never_retry immediately.
    """

    def _should_retry(exc: BaseException) -> bool:
        return isinstance(exc, retry_on) and not isinstance(exc, never_retry)

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "%s failed, will try again",
            description,
            extra={
                "attempt": retry_state.attempt_number,
                "max_attempts": retries + 1,
                "delay_seconds": delay,
                "error": repr(exc),
            },
        )
        if on_retry is not None:
            on_retry(exc, delay, retry_state.attempt_number)

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_incrementing(start=backoff_seconds, increment=backoff_seconds),
        retry=retry_if_exception(_should_retry),
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            return await operation()

    # Unreachable: AsyncRetrying either returns or raises
    raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")
