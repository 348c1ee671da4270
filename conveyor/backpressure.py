"""Pause switch placed between a worker stage and its output channel."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Optional

from conveyor.telemetry.metrics import Metrics

logger = logging.getLogger(__name__)


class ForwardGate:
    """
    While closed, workers still run their handler but hold the result until
    the gate reopens. Upstream stages then block on the full input channel,
    so closing one gate backs the whole chain up to the source.
    """

    def __init__(
        self,
        initially_open: bool = True,
        *,
        name: str = "gate",
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.name = name
        self.metrics = metrics
        self.pauses = 0
        self._closed_at: Optional[float] = None
        self._event = asyncio.Event()
        if initially_open:
            self._event.set()
        else:
            self._closed_at = perf_counter()

    def is_open(self) -> bool:
        return self._event.is_set()

    async def wait_open(self) -> None:
        """Suspend until forwarding is allowed."""
        await self._event.wait()

    def open(self) -> None:
        if self._event.is_set():
            return
        held = perf_counter() - self._closed_at if self._closed_at is not None else 0.0
        self._closed_at = None
        logger.info("Backpressure: resuming %s after %.2fs", self.name, held)
        if self.metrics is not None:
            self.metrics.observe_stage(f"{self.name}_paused", held)
        self._event.set()

    def close(self) -> None:
        if not self._event.is_set():
            return
        self.pauses += 1
        self._closed_at = perf_counter()
        logger.warning("Backpressure: pausing %s (results held)", self.name)
        self._event.clear()
