"""Exponential backoff retry for transient failures of async calls."""

from __future__ import annotations

import asyncio
import functools
import random
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from relay.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    max_retries: int = 3,
    backoff_factor: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    jitter: float = 1.0,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Retry an async function on *exceptions*.

    The wait before retry N (1-based) is ``backoff_factor ** (N - 1)`` plus a
    uniform jitter in ``[0, jitter)`` seconds.  After ``max_retries`` retries
    the last exception propagates.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:
                    if attempt >= max_retries:
                        logger.warning(
                            "retry_exhausted",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(exc),
                        )
                        raise
                    delay = backoff_factor ** attempt + random.uniform(0, jitter)
                    attempt += 1
                    logger.info(
                        "retry_attempt",
                        func=func.__name__,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay_seconds=round(delay, 2),
                        error=str(exc),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
