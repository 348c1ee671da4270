from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, List


class BatchReason(Enum):
    SIZE_REACHED = "size_reached"
    TIMED_OUT = "timed_out"
    FINAL_FLUSH = "final_flush"


class FailurePolicy(Enum):
    DROP = "drop"
    REQUEUE = "requeue"


class ShutdownMode(Enum):
    """How a stage is told that its producer has finished."""

    CLOSE = "close"
    SENTINEL = "sentinel"
    DRAIN_CANCEL = "drain_cancel"


class StageState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class Batch:
    """Ordered group of items emitted by the batcher."""

    items: List[Any] = field(default_factory=list)
    reason: BatchReason = BatchReason.SIZE_REACHED

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.items)
