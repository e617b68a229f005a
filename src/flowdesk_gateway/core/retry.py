from __future__ import annotations

import asyncio
import logging
from functools import wraps
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    ParamSpec,
    TypeVar,
    cast,
)

from tenacity import (
    AsyncRetrying,
    after_log,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .exceptions import TransientError

P = ParamSpec("P")
T = TypeVar("T")


def retry_transient(
    max_attempts: int = 5,
    base_wait: float = 1.0,
    max_wait: float = 60.0,
    jitter: float = 0.1,
) -> Callable[[Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]]:
    """
    Decorator for retrying transient errors with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts, including the first (default: 5)
        base_wait: Base wait time in seconds before exponential backoff (default: 1.0)
        max_wait: Maximum wait time in seconds between retries (default: 60.0)
        jitter: Random seconds added on top of each wait (default: 0.1)

    Returns:
        A decorator that wraps async functions with retry logic.

    Raises:
        The last TransientError once all attempts are exhausted.
    """
    logger = logging.getLogger(__name__)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, T]],
    ) -> Callable[P, Coroutine[Any, Any, T]]:
        @wraps(func)
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_wait, max=max_wait, exp_base=2)
            + wait_random(0, jitter),
            retry=retry_if_exception_type(TransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            after=after_log(logger, logging.INFO),
            reraise=True,
        )
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return cast(T, await func(*args, **kwargs))

        return wrapper

    return decorator


def transient_attempts(
    *,
    max_attempts: int = 3,
    base_wait: float = 1.0,
    max_wait: float = 30.0,
    logger: logging.Logger | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncRetrying:
    """Iterator form of `retry_transient` for call sites that need an injected sleep.

    Usage::

        async for attempt in transient_attempts(max_attempts=3):
            with attempt:
                await do_call()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(max_attempts, 1)),
        wait=wait_exponential(multiplier=base_wait, max=max_wait, exp_base=2),
        retry=retry_if_exception_type(TransientError),
        before_sleep=before_sleep_log(
            logger or logging.getLogger(__name__), logging.WARNING
        ),
        sleep=sleep,
        reraise=True,
    )
