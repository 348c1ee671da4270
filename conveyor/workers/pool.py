"""Pool of concurrent workers consuming one channel and feeding another."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Awaitable, Callable, List, Optional

from conveyor.backpressure import ForwardGate
from conveyor.channel import BoundedChannel
from conveyor.constants import CANCELLED, CLOSED, STOP
from conveyor.errors import FATAL_ERRORS, ConfigError, HandlerError, InvariantError
from conveyor.models import FailurePolicy
from conveyor.ratelimit import WindowRateLimiter
from conveyor.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]
ErrorCallback = Callable[[HandlerError], None]


@dataclass(slots=True)
class _Attempt:
    """Envelope carrying a requeued item and its next attempt number."""

    item: Any
    attempt: int


class WorkerPool:
    """
    Runs ``concurrency`` workers that each loop over: ``get`` from the input,
    optionally wait on the rate limiter, ``await handler(item)``, forward the
    result to the output, ``mark_done`` the input.

    Workers stop on any of three signals:

      * the input is closed and empty (``CLOSED``);
      * the :data:`STOP` sentinel, which each worker re-propagates so every
        peer sees it;
      * :meth:`cancel`, used after ``drain_wait`` on the input. Idle workers
        leave at once; a worker inside its handler finishes that item first.
    """

    def __init__(
        self,
        handler: Handler,
        concurrency: int,
        *,
        failure_policy: FailurePolicy = FailurePolicy.DROP,
        max_attempts: Optional[int] = None,
        limiter: Optional[WindowRateLimiter] = None,
        gate: Optional[ForwardGate] = None,
        metrics: Optional[Metrics] = None,
        on_error: Optional[ErrorCallback] = None,
        name: str = "pool",
    ) -> None:
        """Configure a pool; nothing runs until :meth:`start`.

        Parameters
        ----------
        handler:
            Coroutine function applied to each item. May raise.
        concurrency:
            Number of worker tasks.
        failure_policy:
            ``DROP`` logs and discards a failed item, ``REQUEUE`` puts it back
            on the input.
        max_attempts:
            With ``REQUEUE``, drop an item after this many failed attempts.
            ``None`` requeues without bound.
        limiter:
            Optional rate limiter acquired before every handler call.
        gate:
            Optional gate awaited before forwarding a result downstream.
        metrics:
            Optional metrics sink.
        on_error:
            Called with a :class:`HandlerError` for every failed attempt.
        """
        if concurrency <= 0:
            raise ConfigError(f"concurrency must be positive, got {concurrency}")
        if max_attempts is not None and max_attempts <= 0:
            raise ConfigError(f"max_attempts must be positive, got {max_attempts}")
        self.handler = handler
        self.concurrency = concurrency
        self.failure_policy = failure_policy
        self.max_attempts = max_attempts
        self.limiter = limiter
        self.gate = gate
        self.metrics = metrics
        self.on_error = on_error
        self.name = name

        self._input: Optional[BoundedChannel[Any]] = None
        self._output: Optional[BoundedChannel[Any]] = None
        self._cancel = asyncio.Event()
        self._tasks: List[asyncio.Task[None]] = []

        self.processed = 0
        self.failed = 0
        self.dropped = 0
        self.requeued = 0
        self.active = 0

    # ─── lifecycle ──────────────────────────────────────────────────────
    def start(
        self,
        input: BoundedChannel[Any],
        output: Optional[BoundedChannel[Any]] = None,
    ) -> List[asyncio.Task[None]]:
        """Spawn the worker tasks and return them."""
        if self._tasks:
            raise InvariantError(f"worker pool {self.name} already started")
        self._input = input
        self._output = output
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("%s: started %d workers on %s", self.name, self.concurrency, input.name)
        return list(self._tasks)

    async def join(self) -> None:
        """Wait for every worker to exit.

        If a worker dies on a fatal error the remaining workers are cancelled
        and the error is re-raised.
        """
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_EXCEPTION)
        failed = [t for t in done if not t.cancelled() and t.exception() is not None]
        if failed:
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise failed[0].exception()  # type: ignore[misc]
        logger.info(
            "%s: all workers exited (processed=%d failed=%d dropped=%d requeued=%d)",
            self.name, self.processed, self.failed, self.dropped, self.requeued,
        )

    async def run(
        self,
        input: BoundedChannel[Any],
        output: Optional[BoundedChannel[Any]] = None,
    ) -> None:
        """Start the pool and wait until all workers have exited."""
        self.start(input, output)
        await self.join()

    def cancel(self) -> None:
        """Drain-then-cancel shutdown: release idle workers, let busy ones finish."""
        self._cancel.set()
        if self._input is not None:
            self._input.interrupt()

    def signal_stop(self) -> None:
        """Sentinel shutdown: push one :data:`STOP` that every worker re-propagates."""
        if self._input is None:
            raise InvariantError(f"worker pool {self.name} not started")
        self._input.signal_stop()

    async def abort(self) -> None:
        """Hard-cancel every worker task, interrupting in-flight handlers."""
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # ─── worker loop ────────────────────────────────────────────────────
    async def _call(self, item: Any) -> Any:
        if self.limiter is not None:
            await self.limiter.acquire()
        return await self.handler(item)

    async def _forward(self, result: Any) -> None:
        if self._output is None:
            return
        if self.gate is not None:
            await self.gate.wait_open()
        await self._output.put(result)

    def _requeue_or_drop(self, wid: int, item: Any, attempt: int) -> None:
        assert self._input is not None
        requeue = self.failure_policy is FailurePolicy.REQUEUE
        exhausted = requeue and self.max_attempts is not None and attempt >= self.max_attempts
        if requeue and not exhausted:
            self._input.requeue(_Attempt(item, attempt + 1))
            self.requeued += 1
            if self.metrics is not None:
                self.metrics.inc("items_requeued", 1)
            logger.warning("%s worker %d: requeued item (attempt %d)", self.name, wid, attempt + 1)
            return
        if exhausted:
            logger.error(
                "%s worker %d: dropping item after %d attempts", self.name, wid, attempt
            )
        self.dropped += 1
        if self.metrics is not None:
            self.metrics.inc("items_dropped", 1)

    async def _worker(self, wid: int) -> None:
        input = self._input
        assert input is not None
        while True:
            raw = await input.get(cancel=self._cancel)
            if raw is CLOSED or raw is CANCELLED:
                logger.debug("%s worker %d exiting (%s)", self.name, wid, raw.value)
                break
            if raw is STOP:
                backlog = input.pending_items()
                input.signal_stop()
                if backlog:
                    # items requeued behind the sentinel; it goes back to the tail
                    logger.debug(
                        "%s worker %d deferring STOP behind %d items", self.name, wid, backlog
                    )
                    continue
                logger.debug("%s worker %d received STOP", self.name, wid)
                break

            if isinstance(raw, _Attempt):
                item, attempt = raw.item, raw.attempt
            else:
                item, attempt = raw, 1

            if self.metrics is not None:
                self.metrics.inc("items_total", 1)
            self.active += 1
            start = perf_counter()
            try:
                result = await self._call(item)
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                self.failed += 1
                err = HandlerError(item, attempt, self.name)
                err.__cause__ = exc
                if self.metrics is not None:
                    self.metrics.inc("items_failed", 1)
                    self.metrics.record_error(exc)
                logger.exception(
                    "%s worker %d: handler failed on attempt %d: %s",
                    self.name, wid, attempt, exc,
                )
                self._requeue_or_drop(wid, item, attempt)
                if self.on_error is not None:
                    self.on_error(err)
            else:
                if self.metrics is not None:
                    self.metrics.observe_stage(self.name, perf_counter() - start)
                    self.metrics.inc("items_succeeded", 1)
                await self._forward(result)
                self.processed += 1
            finally:
                self.active -= 1
            input.mark_done()
