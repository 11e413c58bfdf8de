from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_incrementing

from feed_relay.errors import is_transient_error


logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def transient_retrying(
    *,
    attempts: int,
    delay: float,
    event: str,
    sleep: Sleep = asyncio.sleep,
    **context: Any,
) -> AsyncRetrying:
    """Retry transient faults with linear backoff (`delay`, `2 * delay`, ...).

    Anything `is_transient_error` rejects is raised on the first attempt.
    """

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        logger.warning(event, attempt=state.attempt_number, error=str(exc), **context)

    return AsyncRetrying(
        stop=stop_after_attempt(max(1, int(attempts))),
        wait=wait_incrementing(start=float(delay), increment=float(delay)),
        retry=retry_if_exception(is_transient_error),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
