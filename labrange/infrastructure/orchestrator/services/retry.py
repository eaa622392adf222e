"""
Bounded retry helpers built on tenacity, plus a "wait until" poller.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from labrange.core.exceptions import RetryExhaustedError, VMTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    delay: float,
    budget: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> Tuple[T, int]:
    """
    Run ``operation`` until it succeeds, with a fixed delay between attempts.

    Stops after ``max_attempts`` or once ``budget`` seconds have elapsed,
    whichever comes first.

    Returns:
        Tuple of (result, attempts used)

    Raises:
        RetryExhaustedError: carrying the last underlying error
    """
    stop = stop_after_attempt(max_attempts)
    if budget is not None:
        stop = stop | stop_after_delay(budget)

    def _log_retry(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.info(
            "Retrying",
            operation=description,
            attempt=state.attempt_number,
            max_attempts=max_attempts,
            error=str(error) if error else None,
        )

    attempts = 0
    try:
        async for attempt in AsyncRetrying(
            stop=stop,
            wait=wait_fixed(delay),
            retry=retry_if_exception_type(retry_on),
            before_sleep=_log_retry,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await operation()
    except RetryError as e:
        last = e.last_attempt.exception()
        raise RetryExhaustedError(
            f"{description} failed after {attempts} attempts: {last}",
            attempts=attempts,
            last_error=last,
        ) from last
    return result, attempts


async def wait_until(
    predicate: Callable[[], Awaitable[bool]],
    *,
    timeout: float,
    interval: float,
    description: str = "condition",
) -> None:
    """
    Poll ``predicate`` every ``interval`` seconds until it returns True.

    Raises:
        VMTimeoutError: if ``timeout`` elapses first
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await predicate():
            return
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise VMTimeoutError(f"Timed out waiting for {description}", timeout=timeout)
        await asyncio.sleep(min(interval, remaining))
