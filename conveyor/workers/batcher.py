"""
Groups single items from an input channel into size/timeout bounded batches
and feeds them to the next stage.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from conveyor.channel import BoundedChannel
from conveyor.constants import CLOSED, STOP, TIMED_OUT
from conveyor.errors import ConfigError
from conveyor.models import Batch, BatchReason
from conveyor.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)


class Batcher:
    """Dynamic batcher: flush on ``batch_size`` items or ``timeout`` seconds.

    The timeout bounds the whole batch window measured from the moment the
    batch was opened, not the gap between items. A window that expires with
    nothing collected is discarded and a fresh one is opened.
    """

    def __init__(
        self,
        batch_size: int,
        timeout: float,
        *,
        metrics: Optional[Metrics] = None,
        name: str = "batcher",
    ) -> None:
        if batch_size <= 0:
            raise ConfigError(f"batch_size must be positive, got {batch_size}")
        if timeout <= 0:
            raise ConfigError(f"batch timeout must be positive, got {timeout}")
        self.batch_size = batch_size
        self.timeout = timeout
        self.name = name
        self.metrics = metrics
        self.batches_emitted = 0

    async def _emit(
        self,
        items: List[Any],
        reason: BatchReason,
        input: BoundedChannel[Any],
        output: BoundedChannel[Batch],
    ) -> None:
        batch = Batch(items=items, reason=reason)
        await output.put(batch)
        # items count as processed only once their batch is downstream
        for _ in items:
            input.mark_done()
        self.batches_emitted += 1
        if self.metrics is not None:
            self.metrics.observe_batch(len(items), reason.value)
        logger.debug("%s: emitted %d items (%s)", self.name, len(items), reason.value)

    async def run(self, input: BoundedChannel[Any], output: BoundedChannel[Batch]) -> None:
        """Consume ``input`` until it is closed, emitting batches to ``output``.

        On end of input any partial batch is emitted as ``FINAL_FLUSH`` and
        ``output`` is closed. Every received item lands in exactly one batch,
        in arrival order.
        """
        loop = asyncio.get_running_loop()
        items: List[Any] = []
        deadline = loop.time() + self.timeout

        while True:
            item = await input.get(timeout=max(0.0, deadline - loop.time()))

            if item is TIMED_OUT:
                if items:
                    await self._emit(items, BatchReason.TIMED_OUT, input, output)
                    items = []
                deadline = loop.time() + self.timeout
                continue

            if item is CLOSED or item is STOP:
                if items:
                    await self._emit(items, BatchReason.FINAL_FLUSH, input, output)
                output.close()
                logger.info(
                    "%s: input exhausted after %d batches; output closed",
                    self.name, self.batches_emitted,
                )
                return

            items.append(item)
            if len(items) >= self.batch_size:
                await self._emit(items, BatchReason.SIZE_REACHED, input, output)
                items = []
                deadline = loop.time() + self.timeout
