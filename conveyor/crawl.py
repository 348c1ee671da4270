"""Breadth-first crawl driven by a worker pool over a shared frontier."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Awaitable, Callable, FrozenSet, Hashable, Iterable, List, Optional

from conveyor.errors import HandlerError
from conveyor.frontier import Normalizer, SharedFrontier
from conveyor.ratelimit import WindowRateLimiter
from conveyor.telemetry.metrics import Metrics
from conveyor.workers.pool import WorkerPool

logger = logging.getLogger(__name__)

Expander = Callable[[Hashable], Awaitable[Optional[Iterable[Hashable]]]]


@dataclass
class CrawlResult:
    """Outcome of :func:`crawl`."""

    visited: List[Hashable] = field(default_factory=list)
    seen: FrozenSet[Hashable] = frozenset()
    failed: List[Hashable] = field(default_factory=list)


async def crawl(
    seeds: Iterable[Hashable],
    expand: Expander,
    *,
    concurrency: int,
    max_keys: int,
    limiter: Optional[WindowRateLimiter] = None,
    normalize: Optional[Normalizer] = None,
    metrics: Optional[Metrics] = None,
) -> CrawlResult:
    """Visit keys breadth-first starting from ``seeds``.

    ``expand(key)`` is the collaborator's fetch-and-parse step; it returns the
    keys discovered from ``key``. Each discovery goes through
    :meth:`SharedFrontier.try_admit`, so every key is expanded at most once and
    at most ``max_keys`` keys are ever admitted.

    Workers feed their own input channel, so it is never closed. Shutdown is
    drain-then-cancel: once every admitted key has been expanded the pool is
    cancelled.
    """
    frontier = SharedFrontier(seeds, max_keys=max_keys, normalize=normalize, metrics=metrics)
    result = CrawlResult()

    async def handler(key: Hashable) -> None:
        discovered = await expand(key)
        result.visited.append(key)
        if discovered:
            await frontier.admit_many(discovered)

    def on_error(err: HandlerError) -> None:
        result.failed.append(err.item)

    pool = WorkerPool(
        handler,
        concurrency,
        limiter=limiter,
        metrics=metrics,
        on_error=on_error,
        name="crawler",
    )

    start = perf_counter()
    pool.start(frontier.channel)
    join_task = asyncio.create_task(pool.join(), name="crawler-join")
    drain_task = asyncio.create_task(frontier.channel.drain_wait(), name="crawler-drain")
    try:
        await asyncio.wait({join_task, drain_task}, return_when=asyncio.FIRST_COMPLETED)
        if drain_task.done():
            logger.info("Frontier drained; cancelling crawl workers")
            pool.cancel()
        await join_task
    finally:
        drain_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await drain_task
        if not join_task.done():
            await pool.abort()
            join_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await join_task

    result.seen = frontier.snapshot()
    logger.info(
        "Crawl finished in %.2fs: visited=%d seen=%d failed=%d",
        perf_counter() - start, len(result.visited), len(result.seen), len(result.failed),
    )
    return result
