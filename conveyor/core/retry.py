from __future__ import annotations

import asyncio
import functools
import logging
import random
from time import perf_counter
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# transport hiccups worth another try; everything else goes to the failure policy
DEFAULT_RETRIABLE: Tuple[Type[BaseException], ...] = (
    httpx.RequestError,
    asyncio.TimeoutError,
    OSError,
)


def _label(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))


def backoff_delay(retry: int, backoff_factor: float) -> float:
    """Full-jitter delay before retry number ``retry`` (1-based)."""
    return random.uniform(0, backoff_factor ** retry)


async def retry_logic(
    func: Callable[..., Awaitable[T]],
    max_retries: int,
    backoff_factor: float,
    *args: Any,
    retriable: Tuple[Type[BaseException], ...] = DEFAULT_RETRIABLE,
    **kwargs: Any
) -> T:
    """Await ``func(*args, **kwargs)``, retrying up to ``max_retries`` times.

    Only exceptions in ``retriable`` are retried; the last one is re-raised
    once the budget is spent. Anything else propagates on the first attempt.
    """
    attempts = max_retries + 1
    for attempt in range(1, attempts + 1):
        started = perf_counter()
        try:
            result = await func(*args, **kwargs)
        except retriable as exc:
            if attempt == attempts:
                logger.error("%s failed after %d retries: %r", _label(func), max_retries, exc)
                raise
            delay = backoff_delay(attempt, backoff_factor)
            logger.warning(
                "%s raised %s on attempt %d/%d; next try in %.2f s",
                _label(func), type(exc).__name__, attempt, attempts, delay,
            )
            await asyncio.sleep(delay)
        else:
            logger.debug(
                "%s succeeded in %.3f s on attempt %d/%d",
                _label(func), perf_counter() - started, attempt, attempts,
            )
            return result

    raise AssertionError("unreachable")  # pragma: no cover


def with_retries(
    handler: Callable[[Any], Awaitable[T]],
    max_retries: int,
    backoff_factor: float,
    retriable: Tuple[Type[BaseException], ...] = DEFAULT_RETRIABLE,
) -> Callable[[Any], Awaitable[T]]:
    """Wrap a pool handler so transient errors are retried in place."""

    @functools.wraps(handler)
    async def _wrapped(item: Any) -> T:
        return await retry_logic(
            handler, max_retries, backoff_factor, item, retriable=retriable
        )

    return _wrapped
