from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from farebridge.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _log_retry(description: str, attempts: int) -> Callable[[RetryCallState], None]:
    def log(state: RetryCallState) -> None:
        delay = state.next_action.sleep if state.next_action else 0.0
        error = state.outcome.exception() if state.outcome else None
        logger.warning("%s failed (%s), retry %s/%s in %.1fs", description, error, state.attempt_number, attempts - 1, delay)

    return log


async def retry_idempotent(
    call: Callable[[], Awaitable[T]],
    description: str,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
) -> T:
    """Retry a call that is safe to repeat; timeouts and 5xx count as unknown outcome."""
    retrying = AsyncRetrying(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        before_sleep=_log_retry(description, attempts),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await call()
    return result
