from __future__ import annotations

from enum import Enum

# ──────────────────────────────────────────────────────────────────────────────
# Sentinel object that terminates workers in sentinel shutdown mode
# ──────────────────────────────────────────────────────────────────────────────
STOP: object = object()


class Signal(Enum):
    """Non-item outcomes of :meth:`BoundedChannel.get`."""

    CLOSED = "closed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


CLOSED = Signal.CLOSED
CANCELLED = Signal.CANCELLED
TIMED_OUT = Signal.TIMED_OUT
