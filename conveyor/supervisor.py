"""Top level orchestration of a linear chain of pipeline stages."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, List, Optional

from conveyor.backpressure import ForwardGate
from conveyor.channel import BoundedChannel
from conveyor.config import EngineConfig
from conveyor.core.retry import with_retries
from conveyor.errors import ConfigError, InvariantError
from conveyor.models import FailurePolicy, ShutdownMode, StageState
from conveyor.ratelimit import WindowRateLimiter
from conveyor.telemetry.metrics import Metrics
from conveyor.workers.batcher import Batcher
from conveyor.workers.pool import Handler, WorkerPool

logger = logging.getLogger(__name__)

Source = Callable[[BoundedChannel[Any]], Awaitable[None]]
Sink = Callable[[Any], Awaitable[None]]

_TRANSITIONS: Dict[StageState, tuple] = {
    StageState.IDLE: (StageState.RUNNING,),
    StageState.RUNNING: (StageState.DRAINING,),
    StageState.DRAINING: (StageState.STOPPED,),
    StageState.STOPPED: (),
}


class Stage(ABC):
    """One supervised stage: ``Idle → Running → Draining → Stopped``."""

    def __init__(self, name: str, mode: ShutdownMode = ShutdownMode.CLOSE) -> None:
        self.name = name
        self.mode = mode
        self.state = StageState.IDLE
        self.input: Optional[BoundedChannel[Any]] = None
        self.output: Optional[BoundedChannel[Any]] = None
        self.task: Optional[asyncio.Task[None]] = None
        self._stopped = asyncio.Event()

    def _transition(self, new: StageState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise InvariantError(
                f"stage {self.name}: illegal transition {self.state.value} -> {new.value}"
            )
        logger.info("Stage %s: %s -> %s", self.name, self.state.value, new.value)
        self.state = new

    def start(self) -> None:
        self._transition(StageState.RUNNING)
        self.task = asyncio.create_task(self._supervise(), name=f"stage-{self.name}")

    async def _supervise(self) -> None:
        await self._run()
        if self.state is StageState.RUNNING:
            self._transition(StageState.DRAINING)
        self._transition(StageState.STOPPED)
        self._stopped.set()

    @abstractmethod
    async def _run(self) -> None:
        """Do the stage's work until its input is exhausted."""
        raise NotImplementedError

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def shutdown(self) -> None:
        """Tell the stage its producer has finished, according to ``mode``."""
        if self.state is not StageState.RUNNING:
            return
        self._transition(StageState.DRAINING)
        assert self.input is not None
        if self.mode is ShutdownMode.SENTINEL:
            self._signal_stop()
        elif self.mode is ShutdownMode.DRAIN_CANCEL:
            await self.input.drain_wait()
            self._cancel()
        else:
            self.input.close()

    def _signal_stop(self) -> None:
        assert self.input is not None
        self.input.signal_stop()

    def _cancel(self) -> None:
        assert self.input is not None
        self.input.close()

    async def abort(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.task


class SourceStage(Stage):
    """Runs a producer coroutine that writes into the stage's output."""

    def __init__(self, name: str, source: Source) -> None:
        super().__init__(name)
        self.source = source

    async def _run(self) -> None:
        assert self.output is not None
        await self.source(self.output)


class BatcherStage(Stage):
    def __init__(self, name: str, batcher: Batcher, mode: ShutdownMode) -> None:
        super().__init__(name, mode)
        self.batcher = batcher

    async def _run(self) -> None:
        assert self.input is not None and self.output is not None
        await self.batcher.run(self.input, self.output)


class PoolStage(Stage):
    def __init__(self, name: str, pool: WorkerPool, mode: ShutdownMode) -> None:
        super().__init__(name, mode)
        self.pool = pool

    def start(self) -> None:
        assert self.input is not None
        # workers exist before the coordinator may signal them
        self.pool.start(self.input, self.output)
        super().start()

    async def _run(self) -> None:
        await self.pool.join()

    def _signal_stop(self) -> None:
        self.pool.signal_stop()

    def _cancel(self) -> None:
        self.pool.cancel()

    async def abort(self) -> None:
        await self.pool.abort()
        await super().abort()


class PipelineSupervisor:
    """
    Composes stages into a chain and owns its shutdown sequence:

        source  →  [batcher]  →  worker pool(s)  →  [sink]

    Stages start producer-to-consumer. Shutdown proceeds in the same order:
    a stage is only told to finish once the stage feeding it has stopped, so
    nothing is torn down while an upstream stage could still write into it.
    """

    def __init__(self, config: Optional[EngineConfig] = None, metrics: Optional[Metrics] = None) -> None:
        self.config = (config or EngineConfig()).validate()
        self.metrics = metrics or Metrics()
        self._stages: List[Stage] = []
        self._gates: Dict[str, ForwardGate] = {}
        self._started = False

    # ─── building ───────────────────────────────────────────────────────
    @property
    def stages(self) -> List[Stage]:
        return list(self._stages)

    def stage(self, name: str) -> Stage:
        for s in self._stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def _append(self, stage: Stage) -> Stage:
        if self._started:
            raise InvariantError("cannot add stages to a running pipeline")
        if any(s.name == stage.name for s in self._stages):
            raise ConfigError(f"duplicate stage name {stage.name!r}")
        if not self._stages:
            if not isinstance(stage, SourceStage):
                raise ConfigError("the first stage must be a source")
        else:
            upstream = self._stages[-1]
            if isinstance(stage, SourceStage):
                raise ConfigError("a source can only be the first stage")
            if upstream.output is None:
                raise ConfigError(f"stage {upstream.name!r} is a sink; nothing can follow it")
            stage.input = upstream.output
        self._stages.append(stage)
        return stage

    def _channel(self, name: str) -> BoundedChannel[Any]:
        return BoundedChannel(self.config.capacity, name=name)

    def add_source(self, name: str, source: Source) -> Stage:
        """Add the producer. ``source`` receives the channel it must fill."""
        stage = SourceStage(name, source)
        stage.output = self._channel(f"{name}.out")
        return self._append(stage)

    def add_batcher(
        self,
        name: str,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
        *,
        mode: ShutdownMode = ShutdownMode.CLOSE,
    ) -> Stage:
        batcher = Batcher(
            self.config.batch_size if batch_size is None else batch_size,
            self.config.batch_timeout if timeout is None else timeout,
            metrics=self.metrics,
            name=name,
        )
        stage = BatcherStage(name, batcher, mode)
        stage.output = self._channel(f"{name}.out")
        return self._append(stage)

    def _pool(
        self,
        name: str,
        handler: Handler,
        concurrency: int,
        limiter: Optional[WindowRateLimiter],
        failure_policy: Optional[FailurePolicy],
        max_attempts: Optional[int],
    ) -> WorkerPool:
        if self.config.retry_max > 0:
            handler = with_retries(handler, self.config.retry_max, self.config.retry_backoff)
        gate = ForwardGate(name=name, metrics=self.metrics)
        self._gates[name] = gate
        return WorkerPool(
            handler,
            concurrency,
            failure_policy=self.config.failure_policy if failure_policy is None else failure_policy,
            max_attempts=max_attempts if max_attempts is not None else self.config.max_attempts,
            limiter=limiter,
            gate=gate,
            metrics=self.metrics,
            name=name,
        )

    def add_workers(
        self,
        name: str,
        handler: Handler,
        concurrency: Optional[int] = None,
        *,
        mode: Optional[ShutdownMode] = None,
        limiter: Optional[WindowRateLimiter] = None,
        failure_policy: Optional[FailurePolicy] = None,
        max_attempts: Optional[int] = None,
    ) -> Stage:
        """Add a worker pool stage whose handler results feed the next stage."""
        pool = self._pool(
            name, handler,
            self.config.worker_count if concurrency is None else concurrency,
            limiter, failure_policy, max_attempts,
        )
        stage = PoolStage(name, pool, self.config.shutdown_mode if mode is None else mode)
        stage.output = self._channel(f"{name}.out")
        return self._append(stage)

    def add_sink(
        self,
        name: str,
        sink: Sink,
        *,
        mode: Optional[ShutdownMode] = None,
        failure_policy: Optional[FailurePolicy] = None,
    ) -> Stage:
        """Add the terminal consumer; ``sink`` is awaited once per item, in order."""
        pool = self._pool(name, sink, 1, None, failure_policy, None)
        stage = PoolStage(name, pool, self.config.shutdown_mode if mode is None else mode)
        return self._append(stage)

    # ─── backpressure ───────────────────────────────────────────────────
    def pause(self, name: str) -> None:
        """Stop a worker stage from forwarding results until :meth:`resume`."""
        self._gates[name].close()

    def resume(self, name: str) -> None:
        self._gates[name].open()

    # ─── running ────────────────────────────────────────────────────────
    async def _coordinate(self) -> None:
        for upstream, stage in zip(self._stages, self._stages[1:]):
            await upstream.wait_stopped()
            logger.info("%s finished; signalling %s (%s)", upstream.name, stage.name, stage.mode.value)
            await stage.shutdown()
        await self._stages[-1].wait_stopped()

    async def _abort(self) -> None:
        for stage in self._stages:
            await stage.abort()

    async def run(self) -> Metrics:
        """Run the chain to completion and return its metrics.

        A stage dying on a fatal error (configuration or invariant violation,
        or a closed downstream channel) cancels every other stage and the
        error is re-raised.
        """
        if not self._stages:
            raise ConfigError("pipeline has no stages")
        if self._started:
            raise InvariantError("pipeline already started")
        self._started = True
        start = perf_counter()

        for stage in self._stages:
            stage.start()

        coordinator = asyncio.create_task(self._coordinate(), name="pipeline-coordinator")
        watched = [coordinator] + [s.task for s in self._stages if s.task is not None]
        try:
            done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_EXCEPTION)
            failed = [t for t in done if not t.cancelled() and t.exception() is not None]
            if failed:
                exc = failed[0].exception()
                logger.error("Pipeline failed in %s: %r", failed[0].get_name(), exc)
                raise exc  # type: ignore[misc]
        finally:
            if not coordinator.done():
                coordinator.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await coordinator
            await self._abort()

        logger.info("Pipeline completed in %.2fs", perf_counter() - start)
        txt, _ = self.metrics.summary()
        logger.info("\n%s", txt)
        return self.metrics
